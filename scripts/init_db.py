"""
Create every table and optionally register system users / internal accounts.

    python scripts/init_db.py
    python scripts/init_db.py --system-user "SU 1" 1000123 EAAB... 987654 --internal-account act_123 987654
"""

import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.exceptions import ValidationError
from core.logging import setup_logging
# Importing the package registers every table
from models import Base
from services.system_users import SystemUserManager

setup_logging()
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Initialise the ads backend database")
    parser.add_argument(
        "--system-user",
        nargs=4,
        action="append",
        default=[],
        metavar=("NAME", "SYSTEM_USER_ID", "ACCESS_TOKEN", "BUSINESS_MANAGER_ID"),
        help="Register a Business Manager system user (repeatable)",
    )
    parser.add_argument(
        "--internal-account",
        nargs=2,
        action="append",
        default=[],
        metavar=("AD_ACCOUNT_ID", "BUSINESS_MANAGER_ID"),
        help="Mark an ad account as internal so it uses system user tokens (repeatable)",
    )
    return parser.parse_args(argv)


async def init_database(system_users, internal_accounts):
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=settings.ENVIRONMENT == "development")

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_maker() as session:
            manager = SystemUserManager(session)
            for name, system_user_id, token, business_manager_id in system_users:
                try:
                    await manager.add_system_user(name, system_user_id, token, business_manager_id)
                except ValidationError as e:
                    logger.warning(e.message)
            for ad_account_id, business_manager_id in internal_accounts:
                account = await manager.add_internal_account(ad_account_id, business_manager_id)
                logger.info(f"Internal account {account.ad_account_id} registered")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    args = parse_args()
    asyncio.run(init_database(args.system_user, args.internal_account))
