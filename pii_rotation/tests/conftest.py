"""
Shared fixtures for rotation tests.

PII tables live in a file-backed SQLite database (several connections must
see the same data) and ciphertext is produced with the Fernet backend.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pii_rotation.core.config import reload_settings
from pii_rotation.core.database.encryption import FernetCipher
from pii_rotation.core.database.models import Base
from pii_rotation.core.rotation.audit import AuditLogger
from pii_rotation.core.rotation.orchestrator import RotationOrchestrator
from pii_rotation.tests.factories import NEW_KEY, OLD_KEY, pii_metadata


@pytest.fixture
def old_key():
    return OLD_KEY


@pytest.fixture
def new_key():
    return NEW_KEY


@pytest.fixture
def cipher():
    return FernetCipher()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'rotation.db'}"


@pytest.fixture
def engine(db_url):
    """SQLite engine with PII tables and rotation_progress created."""
    engine = create_engine(db_url)
    pii_metadata.create_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session for progress rows."""
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def log_dir(tmp_path):
    return str(tmp_path / "logs")


@pytest.fixture
def audit(log_dir):
    audit = AuditLogger("test-run", log_dir, console=False)
    yield audit
    audit.close()


@pytest.fixture
def orchestrator(engine, db, cipher, audit):
    return RotationOrchestrator(engine, db, cipher, audit)


@pytest.fixture
def cli_env(monkeypatch, db_url, log_dir, engine):
    """Environment for running the CLI against the test database."""
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ROTATION_CIPHER_BACKEND", "fernet")
    monkeypatch.setenv("ROTATION_LOG_DIR", log_dir)
    monkeypatch.delenv("DATABASE_SSLMODE", raising=False)
    reload_settings()
    yield
    monkeypatch.undo()
    reload_settings()
