"""Configuration management for the P2P trade settlement core"""

import os
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    DB_APPLICATION_NAME = os.getenv("DB_APPLICATION_NAME", "p2p_settlement")

    # Settlement
    # simulated: balances and ledger live in this database
    # delegated: an external ledger moves the money, we only record the debit facts
    SETTLEMENT_MODE = os.getenv("SETTLEMENT_MODE", "simulated").lower().strip()
    SETTLEMENT_MODES = ("simulated", "delegated")
    DEFAULT_ASSET = os.getenv("DEFAULT_ASSET", "USDT").upper()
    PLATFORM_FEE_PERCENTAGE = Decimal(os.getenv("PLATFORM_FEE_PERCENTAGE", "0"))

    # Trade deadlines (minutes a trade may sit in each status)
    OPEN_TRADE_TIMEOUT_MINUTES = int(os.getenv("OPEN_TRADE_TIMEOUT_MINUTES", "15"))
    ACCEPTED_TRADE_TIMEOUT_MINUTES = int(os.getenv("ACCEPTED_TRADE_TIMEOUT_MINUTES", "120"))
    ESCROWED_TRADE_TIMEOUT_MINUTES = int(os.getenv("ESCROWED_TRADE_TIMEOUT_MINUTES", "120"))
    PAYMENT_SENT_TIMEOUT_MINUTES = int(os.getenv("PAYMENT_SENT_TIMEOUT_MINUTES", "120"))

    # Expiry reconciliation worker
    EXPIRY_POLL_SECONDS = int(os.getenv("EXPIRY_POLL_SECONDS", "10"))
    EXPIRY_BATCH_SIZE = int(os.getenv("EXPIRY_BATCH_SIZE", "20"))
    EXPIRY_MAX_BACKOFF_SECONDS = int(os.getenv("EXPIRY_MAX_BACKOFF_SECONDS", "60"))

    # Notification outbox relay
    OUTBOX_RELAY_INTERVAL_SECONDS = int(os.getenv("OUTBOX_RELAY_INTERVAL_SECONDS", "30"))
    OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
    OUTBOX_RETRY_DELAY_SECONDS = int(os.getenv("OUTBOX_RETRY_DELAY_SECONDS", "30"))
    OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
    # processing rows older than this belong to a relay that died mid-delivery
    OUTBOX_PROCESSING_LEASE_SECONDS = int(os.getenv("OUTBOX_PROCESSING_LEASE_SECONDS", "300"))
    STUCK_OUTBOX_MINUTES = int(os.getenv("STUCK_OUTBOX_MINUTES", "5"))

    @staticmethod
    def get_status_timeouts() -> Dict[str, int]:
        """Deadline in minutes per canonical status; statuses absent here never time out"""
        return {
            "open": Config.OPEN_TRADE_TIMEOUT_MINUTES,
            "accepted": Config.ACCEPTED_TRADE_TIMEOUT_MINUTES,
            "escrowed": Config.ESCROWED_TRADE_TIMEOUT_MINUTES,
            "payment_sent": Config.PAYMENT_SENT_TIMEOUT_MINUTES,
        }

    @staticmethod
    def get_status_timeout(status: str) -> Optional[timedelta]:
        minutes = Config.get_status_timeouts().get(status)
        if minutes is None:
            return None
        return timedelta(minutes=minutes)

    @staticmethod
    def is_simulated_settlement() -> bool:
        return Config.SETTLEMENT_MODE == "simulated"

    @staticmethod
    def validate_settlement_configuration() -> List[str]:
        """
        Validate settlement configuration values.

        Returns:
            List of human readable problems, empty when the configuration is usable
        """
        problems = []

        if Config.SETTLEMENT_MODE not in Config.SETTLEMENT_MODES:
            problems.append(
                f"SETTLEMENT_MODE must be one of {list(Config.SETTLEMENT_MODES)}, "
                f"got '{Config.SETTLEMENT_MODE}'"
            )

        try:
            fee = Decimal(Config.PLATFORM_FEE_PERCENTAGE)
            if fee < 0 or fee >= 100:
                problems.append(f"PLATFORM_FEE_PERCENTAGE must be in [0, 100), got {fee}")
        except (InvalidOperation, TypeError):
            problems.append(f"PLATFORM_FEE_PERCENTAGE is not a number: {Config.PLATFORM_FEE_PERCENTAGE}")

        for status, minutes in Config.get_status_timeouts().items():
            if minutes <= 0:
                problems.append(f"Timeout for '{status}' must be positive, got {minutes}")

        if Config.EXPIRY_BATCH_SIZE <= 0:
            problems.append("EXPIRY_BATCH_SIZE must be positive")
        if Config.EXPIRY_POLL_SECONDS <= 0:
            problems.append("EXPIRY_POLL_SECONDS must be positive")
        if Config.OUTBOX_MAX_ATTEMPTS <= 0:
            problems.append("OUTBOX_MAX_ATTEMPTS must be positive")
        if Config.OUTBOX_PROCESSING_LEASE_SECONDS <= 0:
            problems.append("OUTBOX_PROCESSING_LEASE_SECONDS must be positive")

        if not Config.DATABASE_URL:
            problems.append("DATABASE_URL environment variable is required")

        for problem in problems:
            logger.error(f"❌ CONFIG_INVALID: {problem}")

        return problems

    @staticmethod
    def log_settlement_config():
        """Log the effective settlement configuration at startup"""
        logger.info(f"🔧 ENVIRONMENT: {Config.ENVIRONMENT} (production={Config.IS_PRODUCTION})")
        logger.info(
            f"💰 SETTLEMENT: mode={Config.SETTLEMENT_MODE} asset={Config.DEFAULT_ASSET} "
            f"fee={Config.PLATFORM_FEE_PERCENTAGE}%"
        )
        logger.info(f"⏰ DEADLINES (minutes): {Config.get_status_timeouts()}")
        logger.info(
            f"🔁 EXPIRY_WORKER: every {Config.EXPIRY_POLL_SECONDS}s, batch {Config.EXPIRY_BATCH_SIZE}, "
            f"max backoff {Config.EXPIRY_MAX_BACKOFF_SECONDS}s"
        )
        logger.info(
            f"📬 OUTBOX_RELAY: every {Config.OUTBOX_RELAY_INTERVAL_SECONDS}s, batch {Config.OUTBOX_BATCH_SIZE}, "
            f"max attempts {Config.OUTBOX_MAX_ATTEMPTS}, lease {Config.OUTBOX_PROCESSING_LEASE_SECONDS}s"
        )
