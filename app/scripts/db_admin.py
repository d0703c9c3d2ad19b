#!/usr/bin/env python3
"""
Database Administration Script
Connection test, statistics and maintenance commands for the data-access layer
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent.parent))
from database_manager import DatabaseManager
from db_config import load_config
from db_logging import configure_logging

logger = logging.getLogger(__name__)


def _split_tables(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [name.strip() for name in value.split(",") if name.strip()]


def run_command(db: DatabaseManager, args) -> Any:
    """Execute one subcommand; returns its printable result (None means failure)"""
    if args.command == "test":
        return {"connected": db.test_connection()}
    if args.command == "stats":
        db.test_connection()
        return db.get_connection_stats()
    if args.command == "info":
        return db.get_database_info()
    if args.command == "optimize":
        return db.maintenance.optimize_tables(_split_tables(args.tables))
    if args.command == "integrity":
        return db.maintenance.check_integrity(_split_tables(args.tables))
    if args.command == "size":
        return db.maintenance.get_database_size()
    if args.command == "backup":
        path = db.maintenance.create_backup(
            include_data=not args.no_data, compress=args.compress
        )
        return {"backup_file": str(path)}
    raise ValueError(f"Unknown command: {args.command}")


def _succeeded(command: str, result: Any) -> bool:
    if result is None:
        return False
    if command == "test":
        return bool(result["connected"])
    return True


def _print_result(result: Any, as_json: bool):
    if as_json:
        print(json.dumps(result, indent=2, default=str))
        return

    if isinstance(result, dict):
        for key, value in result.items():
            if isinstance(value, (dict, list)):
                print(f"{key}:")
                print(json.dumps(value, indent=2, default=str))
            else:
                print(f"{key}: {value}")
    elif isinstance(result, list):
        for item in result:
            print(item)
    else:
        print(result)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Database Administration")
    parser.add_argument("--env-file", default=".env", help="Path to .env file")
    parser.add_argument("--json", action="store_true", help="Output in JSON format")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("test", help="Test the database connection")
    subparsers.add_parser("stats", help="Show connection and query statistics")
    subparsers.add_parser("info", help="Show server and database information")

    optimize = subparsers.add_parser("optimize", help="VACUUM ANALYZE tables")
    optimize.add_argument("--tables", help="Comma-separated table names (default: all)")

    integrity = subparsers.add_parser("integrity", help="Check table integrity")
    integrity.add_argument("--tables", help="Comma-separated table names (default: all)")

    subparsers.add_parser("size", help="Show database and table sizes")

    backup = subparsers.add_parser("backup", help="Write a SQL backup file")
    backup.add_argument("--no-data", action="store_true", help="Schema only")
    backup.add_argument("--compress", action="store_true", help="gzip the backup")

    return parser


def main(argv: Optional[List[str]] = None,
         manager_factory: Optional[Callable[..., DatabaseManager]] = None) -> int:
    """CLI interface for database administration"""
    args = build_parser().parse_args(argv)

    config = load_config(args.env_file)
    configure_logging("DEBUG" if args.verbose else config.log_level)

    factory = manager_factory or DatabaseManager
    try:
        with factory(config) as db:
            result = run_command(db, args)
    except Exception as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"Error: {e}")
        return 1

    if result is not None:
        _print_result(result, args.json)
    return 0 if _succeeded(args.command, result) else 1


if __name__ == "__main__":
    sys.exit(main())
