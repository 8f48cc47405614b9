#!/usr/bin/env python3
"""
PII Encryption Key Rotation

Re-encrypts the PII columns of users, contacts and companies from the current
key to a new key while the application keeps running.

Usage:
    python rotate_keys.py --old-key "current-key-32-chars-minimum" \
                          --new-key "new-key-32-chars-minimum" \
                          --batch-size 100 --dry-run

Examples:
    # Prove the rotation without changing any data
    python rotate_keys.py --old-key "$OLD_KEY" --new-key "$NEW_KEY" --dry-run

    # Rotate (rerun the same command to resume after a crash)
    python rotate_keys.py --old-key "$OLD_KEY" --new-key "$NEW_KEY"

    # Confirm nothing is left under the old key
    python rotate_keys.py --new-key "$NEW_KEY" --verify
"""
import os
import sys

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from pii_rotation.cli import run  # noqa: E402

if __name__ == "__main__":
    run()
