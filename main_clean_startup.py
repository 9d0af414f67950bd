#!/usr/bin/env python3
"""
Settlement Worker Startup

Deterministic startup for the background side of the settlement core:
1. Configuration check
2. Database connection and schema
3. Scheduler with the trade expiry and outbox relay jobs

Interactive callers use TradeTransitionService directly; this process only runs the jobs.
"""

import logging
import asyncio
import sys

from config import Config

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class CleanStartupManager:
    """Startup sequence for the settlement worker process"""

    def __init__(self):
        self.scheduler = None
        self.startup_complete = False
        self.startup_errors = []

    async def validate_configuration(self) -> bool:
        problems = Config.validate_settlement_configuration()
        if problems:
            self.startup_errors.extend(f"Config: {p}" for p in problems)
            return False
        Config.log_settlement_config()
        return True

    async def initialize_database(self) -> bool:
        """Initialize database with clean error handling."""
        try:
            logger.info("🗄️ Initializing database...")

            from database import create_tables, test_connection
            if not test_connection():
                raise Exception("Database connection test failed")

            if not create_tables():
                raise Exception("Table creation failed")

            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def start_scheduler(self) -> bool:
        try:
            from jobs.settlement_scheduler import get_settlement_scheduler_instance
            self.scheduler = get_settlement_scheduler_instance()
            self.scheduler.start()
            self.startup_complete = True
            return True
        except Exception as e:
            logger.error(f"❌ Scheduler start failed: {e}")
            self.startup_errors.append(f"Scheduler: {e}")
            return False

    async def startup_sequence(self) -> bool:
        """Run every startup step; any failure stops the sequence"""
        logger.info("🚀 Starting settlement worker...")

        startup_steps = [
            ("Configuration", self.validate_configuration),
            ("Database", self.initialize_database),
            ("Scheduler", self.start_scheduler),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not await step_func():
                logger.error(f"🚨 Step '{step_name}' failed - cannot continue startup: {self.startup_errors}")
                return False

        logger.info("✅ Clean startup sequence completed successfully")
        return self.startup_complete

    def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.stop()


startup_manager = CleanStartupManager()


async def main_clean():
    success = await startup_manager.startup_sequence()
    if not success:
        logger.error("❌ Startup failed - exiting")
        sys.exit(1)

    logger.info("🎉 Settlement worker running")
    try:
        await asyncio.Event().wait()
    finally:
        startup_manager.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main_clean())
    except KeyboardInterrupt:
        logger.info("👋 Settlement worker stopped by user")
    except Exception as e:
        logger.error(f"❌ Fatal error: {e}")
        sys.exit(1)
