"""Configuration management for the Bitcoin escrow engine"""

import os
import logging
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")  # Unified database (sqlite:/// or postgresql://)
    if DATABASE_URL:
        _db_kind = DATABASE_URL.split(":", 1)[0]
        logger.info(f"✅ DATABASE_CONFIG: Using {_db_kind} database")
    else:
        logger.error("❌ DATABASE_URL not configured! Please set DATABASE_URL environment variable.")

    # Bitcoin network: testnet unless explicitly switched to mainnet
    BTC_NETWORK = os.getenv("BTC_NETWORK", "testnet").lower().strip()
    IS_MAINNET = BTC_NETWORK == "mainnet"

    # Custody key material (BIP39). Without it the custody service runs in simulation mode.
    BTC_MASTER_MNEMONIC = os.getenv("BTC_MASTER_MNEMONIC", "").strip()
    BTC_MNEMONIC_PASSPHRASE = os.getenv("BTC_MNEMONIC_PASSPHRASE", "")

    @staticmethod
    def _validate_fee_percentage(env_var: str, default: str, min_val: float = 0.0, max_val: float = 20.0) -> Decimal:
        """Validate fee percentage with bounds checking"""
        try:
            value_str = os.getenv(env_var, default)
            percentage = Decimal(value_str)

            if percentage < Decimal(str(min_val)):
                logger.error(f"❌ {env_var}={percentage}% is below minimum {min_val}%. Using default {default}%")
                return Decimal(default)

            if percentage > Decimal(str(max_val)):
                logger.error(f"❌ {env_var}={percentage}% exceeds maximum {max_val}%. Using default {default}%")
                return Decimal(default)

            logger.info(f"✅ {env_var}={percentage:.1f}% validated successfully")
            return percentage

        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{os.getenv(env_var)}': {e}. Using default {default}%")
            return Decimal(default)

    @staticmethod
    def _validate_int(env_var: str, default: int, min_val: int = 1, max_val: Optional[int] = None) -> int:
        """Validate integer setting with bounds checking"""
        raw = os.getenv(env_var)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.error(f"❌ Invalid {env_var} value '{raw}'. Using default {default}")
            return default

        if value < min_val or (max_val is not None and value > max_val):
            logger.error(f"❌ {env_var}={value} outside allowed range [{min_val}, {max_val}]. Using default {default}")
            return default
        return value

    # Fee configuration
    ESCROW_FEE_PERCENTAGE = _validate_fee_percentage("ESCROW_FEE_PERCENTAGE", "2.0")  # Charged to seller on release
    DISPUTE_FEE_PERCENTAGE = _validate_fee_percentage("DISPUTE_FEE_PERCENTAGE", "3.0")  # Charged to ruled party

    # Escrow terms
    MAX_ESCROW_AMOUNT_BTC = Decimal("21000000")
    DEFAULT_INSPECTION_DAYS = _validate_int("DEFAULT_INSPECTION_DAYS", 3, 1, 30)
    DEFAULT_EXPIRES_IN_DAYS = _validate_int("DEFAULT_EXPIRES_IN_DAYS", 14, 1, 90)

    # Deposit monitor
    DEPOSIT_MIN_CONFIRMATIONS = _validate_int("DEPOSIT_MIN_CONFIRMATIONS", 1, 0, 100)
    DEPOSIT_POLL_INTERVAL_SECONDS = _validate_int("DEPOSIT_POLL_INTERVAL_SECONDS", 30, 5)
    DEPOSIT_POLL_BATCH_SIZE = _validate_int("DEPOSIT_POLL_BATCH_SIZE", 100, 1, 1000)
    DEPOSIT_WATCH_MAX_AGE_DAYS = _validate_int("DEPOSIT_WATCH_MAX_AGE_DAYS", 7, 1)  # Terminal escrows stop being polled after this
    CHAIN_API_TIMEOUT_SECONDS = _validate_int("CHAIN_API_TIMEOUT_SECONDS", 10, 1, 120)
    MEMPOOL_API_BASE_URL = os.getenv("MEMPOOL_API_BASE_URL") or (
        "https://mempool.space/api" if IS_MAINNET else "https://mempool.space/testnet/api"
    )

    # Scheduler cadence
    ESCROW_SWEEP_INTERVAL_MINUTES = _validate_int("ESCROW_SWEEP_INTERVAL_MINUTES", 5)
    HOUSEKEEPING_INTERVAL_MINUTES = _validate_int("HOUSEKEEPING_INTERVAL_MINUTES", 60)
    SCHEDULER_STARTUP_DELAY_SECONDS = _validate_int("SCHEDULER_STARTUP_DELAY_SECONDS", 5, 0)
    SWEEP_BATCH_SIZE = _validate_int("SWEEP_BATCH_SIZE", 50, 1, 1000)

    # Housekeeping
    NOTIFICATION_RETENTION_DAYS = _validate_int("NOTIFICATION_RETENTION_DAYS", 8, 1)

    # Audit trail mirror (JSON lines); unset keeps audit rows in the database only
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE") or None

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Escrow Engine Configuration:")
        logger.info(f"   Network: {Config.BTC_NETWORK.upper()}")
        logger.info(f"   Custody mode: {'HD multisig' if Config.BTC_MASTER_MNEMONIC else 'SIMULATION'}")
        logger.info(f"   Chain API: {Config.MEMPOOL_API_BASE_URL}")
        logger.info(f"   Fees: escrow {Config.ESCROW_FEE_PERCENTAGE}% / dispute {Config.DISPUTE_FEE_PERCENTAGE}%")
        logger.info(
            f"   Cadence: deposits {Config.DEPOSIT_POLL_INTERVAL_SECONDS}s, "
            f"sweeps {Config.ESCROW_SWEEP_INTERVAL_MINUTES}m, "
            f"housekeeping {Config.HOUSEKEEPING_INTERVAL_MINUTES}m"
        )

    @staticmethod
    def validate_production_config():
        """Validate configuration before the engine starts; raises on fatal misconfiguration"""
        if not Config.DATABASE_URL:
            raise ValueError(
                "🚨 CRITICAL: DATABASE_URL not configured!\n"
                "   → Set DATABASE_URL (e.g. sqlite:///escrow.db or postgresql://...)"
            )

        if Config.BTC_NETWORK not in ("mainnet", "testnet"):
            raise ValueError(f"🚨 CRITICAL: BTC_NETWORK must be 'mainnet' or 'testnet', got '{Config.BTC_NETWORK}'")

        if Config.IS_MAINNET and not Config.BTC_MASTER_MNEMONIC:
            raise ValueError("🚨 CRITICAL: mainnet requires BTC_MASTER_MNEMONIC; simulation mode is testnet-only")

        if not Config.BTC_MASTER_MNEMONIC:
            logger.warning("⚠️ BTC_MASTER_MNEMONIC not set - custody addresses will be non-spendable placeholders")

        return True
