#!/usr/bin/env python3
"""
Initialize the explanation database.

Creates all tables and seeds the default prompt templates.
"""
import argparse
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from core.constants import USER_TIERS
from data.database import DatabaseManager, set_db_manager
from data.repositories import UserRepository
from services.prompt_service import seed_default_prompts


def main():
    parser = argparse.ArgumentParser(
        description='Initialize explanation database'
    )
    parser.add_argument(
        '--database-url',
        type=str,
        default=None,
        help='Database URL (default: DATABASE_URL setting)'
    )
    parser.add_argument(
        '--drop-existing',
        action='store_true',
        help='Drop existing tables before creating new ones (WARNING: destroys data!)'
    )
    parser.add_argument(
        '--overwrite-prompts',
        action='store_true',
        help='Replace stored prompt templates with the defaults'
    )
    parser.add_argument(
        '--admin',
        type=str,
        default=None,
        help='User ID to create (or promote) as an admin'
    )
    parser.add_argument(
        '--tier',
        type=str,
        default='pro',
        choices=USER_TIERS,
        help='Tier for the --admin user'
    )

    args = parser.parse_args()

    # Create database manager
    db_manager = DatabaseManager(args.database_url)
    set_db_manager(db_manager)

    print("=" * 60)
    print("Explanation Database Initialization")
    print("=" * 60)
    print(f"Database URL: {db_manager.database_url}")
    print()

    # Drop tables if requested
    if args.drop_existing:
        confirm = input("⚠️  Drop existing tables? This will DELETE ALL DATA! (yes/no): ")
        if confirm.lower() == 'yes':
            db_manager.drop_tables()
            print()
        else:
            print("Aborted.")
            return

    # Create tables
    db_manager.create_tables()
    written = seed_default_prompts(db_manager.session, overwrite=args.overwrite_prompts)

    if args.admin:
        with db_manager.session() as session:
            repo = UserRepository(session)
            user = repo.get_or_create(args.admin, tier=args.tier)
            user.is_admin = True
            user.tier = args.tier
        print(f"✓ Admin user: {args.admin} ({args.tier})")

    print()
    print("✓ Database initialized successfully!")
    print(f"  Prompt templates written: {written}")
    print()
    print("Tables created:")
    print("  - users")
    print("  - daily_usage")
    print("  - monthly_export_usage")
    print("  - prompts")
    print("  - explanation_sets")
    print("  - explanations")
    print()
    print("You can now:")
    print("  1. Start the API server: uvicorn serving.workflow_api:app --port 8002")
    print("  2. Detect regions or run a batch via CLI: python cli_workflow.py --help")
    print()


if __name__ == '__main__':
    main()
