"""PII encryption key rotation engine."""
__version__ = "1.0.0"
