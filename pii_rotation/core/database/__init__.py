"""Database module: progress model, connection, cipher capability."""
from .models import Base, RotationProgress, ProgressStatus
from .connection import get_db, init_db, get_engine, create_tables, dispose_db
from .encryption import (
    CipherCapability, PgcryptoCipher, FernetCipher, build_cipher, hash_key, is_ciphertext,
)

__all__ = [
    'Base',
    'RotationProgress',
    'ProgressStatus',
    'get_db',
    'init_db',
    'get_engine',
    'create_tables',
    'dispose_db',
    'CipherCapability',
    'PgcryptoCipher',
    'FernetCipher',
    'build_cipher',
    'hash_key',
    'is_ciphertext',
]
