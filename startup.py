# © [2025] EDT&Partners. Licensed under CC BY 4.0.

import os

from sqlalchemy.orm import Session
from database.crud import delete_expired_handoffs, delete_expired_launch_sessions
from logging_config import setup_logging
import alembic.config
import alembic.command

logger = setup_logging(module_name='startup')

ALEMBIC_INI_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini")

async def run_database_migrations() -> None:
    """Run database migrations using Alembic."""
    logger.info("Starting database migrations...")
    try:
        alembic_cfg = alembic.config.Config(ALEMBIC_INI_PATH)
        logger.debug("Alembic configuration loaded successfully")

        alembic.command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Error executing database migrations: {str(e)}")
        logger.error(f"Migration error type: {type(e).__name__}")
        raise

async def purge_expired_launch_state(db: Session) -> None:
    """Remove launch sessions and handoff codes whose TTL has passed."""
    logger.info("Purging expired LTI launch state...")
    try:
        handoffs = delete_expired_handoffs(db)
        sessions = delete_expired_launch_sessions(db)
        logger.info(f"Purged {sessions} expired launch sessions and {handoffs} expired handoff codes")
    except Exception as e:
        logger.error(f"Error purging expired launch state: {str(e)}")
        raise

async def run_startup_tasks(db: Session):
    logger.info("Starting application startup tasks...")

    try:
        logger.info("Step 1/2: Running database migrations...")
        await run_database_migrations()
        logger.info("✓ Database migrations completed")

        logger.info("Step 2/2: Purging expired launch state...")
        await purge_expired_launch_state(db)
        logger.info("✓ Expired launch state purged")

        logger.info("✓ All application startup tasks completed successfully")

    except Exception as e:
        logger.error(f"Error during startup tasks: {str(e)}")
        logger.error(f"Startup error type: {type(e).__name__}")
        raise
