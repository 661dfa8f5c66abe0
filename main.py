#!/usr/bin/env python3
"""
Bitcoin Escrow Engine - Startup

Deterministic startup sequence:
1. load .env and configure logging
2. validate configuration
3. verify the database and create missing tables
4. initialize custody (HD multisig or simulation mode)
5. start the background scheduler and run until interrupted
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from config import Config  # noqa: E402  (reads the environment populated above)


def initialize_database() -> bool:
    """Check connectivity and create tables"""
    from database import create_tables, test_connection

    logger.info("🗄️ Initializing database...")
    if not test_connection():
        logger.error("❌ Database connection test failed")
        return False
    if not create_tables():
        logger.error("❌ Table creation failed")
        return False
    logger.info("✅ Database initialization complete")
    return True


def initialize_custody() -> bool:
    """Build the process-wide custody service once, failing fast on a bad mnemonic"""
    from services.custody_address_service import CustodyConfigError, get_custody_service

    try:
        service = get_custody_service()
    except CustodyConfigError as e:
        logger.error(f"❌ CUSTODY_INIT_FAILED: {e}")
        return False

    mode = "SIMULATION" if service.simulation_mode else "HD multisig"
    logger.info(f"🔐 Custody initialized: {mode} on {service.network}")
    return True


async def run_engine():
    from jobs.escrow_scheduler import get_escrow_scheduler_instance

    scheduler = get_escrow_scheduler_instance()
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    logger.info("🚀 Escrow engine running - press Ctrl+C to stop")
    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        logger.info("👋 Escrow engine stopped")


def main() -> int:
    try:
        Config.validate_production_config()
    except ValueError as e:
        logger.critical(str(e))
        return 1

    Config.log_environment_config()

    if not initialize_database():
        return 1
    if not initialize_custody():
        return 1

    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info("👋 Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
