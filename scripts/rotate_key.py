#!/usr/bin/env python3
"""
Key rotation - unlock with the device PIN, rotate the session key and re-encrypt the store.
Safe to re-run: documents already under the newest key are skipped.
"""

import argparse
import getpass
import sys
from pathlib import Path

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from healthbridge.core.errors import HealthBridgeError
from healthbridge.core.keys import KeyManager
from healthbridge.core.store import EncryptedStore, resume_migration


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Rotate the encryption key and migrate stored documents")
    parser.add_argument("--db", help="Database path (defaults to DB_PATH)")
    parser.add_argument("--timeout", type=float, help="Migration timeout in seconds")
    parser.add_argument("--resume-only", action="store_true",
                        help="Only finish an interrupted migration, do not rotate again")
    parser.add_argument("--if-due", action="store_true", help="Rotate only when the rotation policy says so")
    args = parser.parse_args(argv)

    keys = KeyManager(args.db)
    store = EncryptedStore(args.db)

    try:
        with keys.key_session(getpass.getpass("PIN: "), actor="rotate_key"):
            results = resume_migration(store, keys, timeout=args.timeout, actor="rotate_key")
            for result in results:
                print(f"Resumed migration: {result.migrated} migrated, {result.skipped} skipped, {result.failed} failed")

            if args.resume_only or (args.if_due and not keys.should_rotate()):
                print("No rotation performed")
                return 0 if all(r.completed for r in results) else 1

            rotation = keys.rotate_key(rotated_by="manual", actor="rotate_key")
            print(f"🔑 Rotated {rotation.previous_key_id} -> {rotation.new_key_id} (version {rotation.version})")

            result = store.rotate_and_migrate(keys.retired_key(rotation.previous_key_id), keys.require_key("migrate"),
                                              timeout=args.timeout, actor="rotate_key")
    except HealthBridgeError as e:
        print(f"❌ {e.kind}: {e}", file=sys.stderr)
        return 1

    print(f"Migrated {result.migrated}, skipped {result.skipped}, failed {result.failed}")
    if result.interrupted:
        print(f"⚠️  Migration {result.interrupted}; re-run with --resume-only to finish")
    for error in result.errors[:10]:
        print(f"  - {error}")
    return 0 if result.completed else 1


if __name__ == "__main__":
    sys.exit(main())
