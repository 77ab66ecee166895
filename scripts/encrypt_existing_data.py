#!/usr/bin/env python3
"""Seal profile fields that were stored before field encryption was enabled.

Usage:
    SHARED_FS_ROOT=/srv/gatekeeper FIELD_ENCRYPTION_KEY=... python scripts/encrypt_existing_data.py

Rows record which fields are already sealed, so running this twice is a no-op.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(
        description="Encrypt plaintext phone numbers and TOTP secrets in place",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args()

    if not os.environ.get("SHARED_FS_ROOT"):
        print("Error: SHARED_FS_ROOT must point at the persisted store")
        sys.exit(1)
    if not os.environ.get("FIELD_ENCRYPTION_KEY"):
        print("Error: FIELD_ENCRYPTION_KEY is required")
        sys.exit(1)

    from gatekeeper.config import get_settings
    from gatekeeper.service.crypto import FieldCipher
    from gatekeeper.storage.memory import MemoryStore

    settings = get_settings()
    store = MemoryStore(settings.shared_fs_root, cipher=FieldCipher(settings.field_encryption_key))
    migrated = store.migrate_plaintext_fields()
    print(f"Encrypted {migrated} field value(s) across {len(store.users)} user(s)")


if __name__ == "__main__":
    main()
