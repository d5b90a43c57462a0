#!/usr/bin/env python3
"""
Storage diagnostics - integrity verification, corruption records and key rotation status.
"""

import argparse
import getpass
import json
import sys
from pathlib import Path

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from healthbridge.core.config import validate_config
from healthbridge.core.errors import HealthBridgeError
from healthbridge.core.keys import KeyManager
from healthbridge.core.store import EncryptedStore


def format_summary(summary: dict) -> str:
    lines = [f"Corruption level: {summary['corruption_level'].upper()}",
             f"Corrupted documents: {summary['total']} "
             f"({summary['recoverable']} recoverable, {summary['unrecoverable']} unrecoverable)",
             f"Seen in last 24h: {summary['recent_24h']}"]
    if summary['latest']:
        latest = summary['latest']
        lines.append(f"Latest: {latest['id']} - {latest['error_summary']}")
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Encrypted store diagnostics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --corruption              # Summarise corrupted documents
  %(prog)s --verify                  # Verify checksums (prompts for PIN)
  %(prog)s --verify --sample 50      # Verify the 50 least recently checked documents
  %(prog)s --rotation-status --json  # Key rotation status as JSON
  %(prog)s --clear-corrupted         # Drop corruption records after review

Environment variables:
- DB_PATH=./data/healthbridge.db (database location)
        """
    )
    parser.add_argument("--db", help="Database path (defaults to DB_PATH)")
    parser.add_argument("--corruption", "-c", action="store_true", help="Show corrupted document summary")
    parser.add_argument("--verify", "-v", action="store_true", help="Verify document checksums")
    parser.add_argument("--sample", type=int, help="Verify at most this many documents")
    parser.add_argument("--rotation-status", "-r", action="store_true", help="Show key rotation status")
    parser.add_argument("--clear-corrupted", action="store_true", help="Clear all corruption records")
    parser.add_argument("--check-config", action="store_true", help="Validate configuration")
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    args = parser.parse_args(argv)

    if not any([args.corruption, args.verify, args.rotation_status, args.clear_corrupted, args.check_config]):
        parser.print_help()
        return 1

    output = {}
    exit_code = 0
    store = EncryptedStore(args.db)
    keys = KeyManager(args.db)

    try:
        if args.check_config:
            issues = validate_config()
            output["config_issues"] = issues
            if issues:
                exit_code = 1

        if args.corruption:
            output["corruption"] = store.corruption_summary()

        if args.rotation_status:
            output["rotation"] = keys.get_rotation_status()

        if args.verify:
            with keys.key_session(getpass.getpass("PIN: "), actor="diagnostics"):
                report = store.checksums.verify_all(store, keys.require_key("read"), sample_size=args.sample,
                                                    actor="diagnostics")
            output["integrity"] = report.to_dict()
            if report.failed:
                exit_code = 1

        if args.clear_corrupted:
            output["cleared"] = store.clear_corrupted(actor="diagnostics")

    except HealthBridgeError as e:
        print(f"❌ {e.kind}: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(output, indent=2, default=str))
        return exit_code

    if "config_issues" in output:
        print("Configuration: OK" if not output["config_issues"] else "Configuration issues:")
        for issue in output["config_issues"]:
            print(f"  - {issue}")
    if "corruption" in output:
        print(format_summary(output["corruption"]))
    if "rotation" in output:
        rotation = output["rotation"]
        print(f"Key version: {rotation['version']} ({rotation['current_key_id']})")
        print(f"Usage: {rotation['usage_count']}, age: {rotation['key_age_days']} days")
        if rotation["should_rotate"]:
            print("⚠️  Rotation recommended")
    if "integrity" in output:
        report = output["integrity"]
        status = "✅" if not report["failed"] else "❌"
        print(f"{status} Verified {report['verified']}/{report['total']} documents "
              f"({report['failed']} failed, {report['missing']} without checksum)")
        for doc_id in report["failed_ids"]:
            print(f"  - {doc_id}")
    if "cleared" in output:
        print(f"Cleared {output['cleared']} corruption records")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
