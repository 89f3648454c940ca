"""Configuration management for the Channel Escrow deal service"""

import os
import logging
from decimal import Decimal
from typing import List, Optional

logger = logging.getLogger(__name__)


def _parse_id_list(raw: str) -> List[int]:
    """Parse a comma separated list of user ids, skipping blanks and junk"""
    ids = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.append(int(chunk))
        except ValueError:
            logger.warning(f"⚠️ CONFIG: Ignoring non-numeric operator id '{chunk}'")
    return ids


class Config:
    """Application configuration"""

    # Environment detection - ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Trusted agent / operator identity. Resolved once at the HTTP boundary,
    # the engine only ever sees the resulting role claim.
    AGENT_OPERATOR_IDS = _parse_id_list(os.getenv("AGENT_OPERATOR_IDS", ""))
    AGENT_EMAIL = os.getenv("AGENT_EMAIL", "")

    # Holding period
    HOLDING_PERIOD_DAYS = int(os.getenv("HOLDING_PERIOD_DAYS", "7"))
    HOLD_REQUIRED_PLATFORMS = [
        p.strip().lower()
        for p in os.getenv("HOLD_REQUIRED_PLATFORMS", "youtube").split(",")
        if p.strip()
    ]

    # Escrow fee quote
    ESCROW_FEE_PERCENTAGE = Decimal(os.getenv("ESCROW_FEE_PERCENTAGE", "4.8"))
    MIN_ESCROW_FEE = Decimal(os.getenv("MIN_ESCROW_FEE", "3.00"))

    # NOWPayments (asynchronous crypto rail)
    NOWPAYMENTS_API_KEY = os.getenv("NOWPAYMENTS_API_KEY")
    NOWPAYMENTS_BASE_URL = os.getenv("NOWPAYMENTS_BASE_URL", "https://api.nowpayments.io/v1")
    NOWPAYMENTS_IPN_SECRET = os.getenv("NOWPAYMENTS_IPN_SECRET")
    NOWPAYMENTS_IPN_CALLBACK_URL = os.getenv("NOWPAYMENTS_IPN_CALLBACK_URL")
    NOWPAYMENTS_DEFAULT_PAY_CURRENCY = os.getenv("NOWPAYMENTS_DEFAULT_PAY_CURRENCY", "btc")
    NOWPAYMENTS_TIMEOUT_SECONDS = int(os.getenv("NOWPAYMENTS_TIMEOUT_SECONDS", "15"))

    # Chat collaborator (system messages into the buyer/seller conversation)
    CHAT_SERVICE_URL = os.getenv("CHAT_SERVICE_URL", "")
    CHAT_SERVICE_TOKEN = os.getenv("CHAT_SERVICE_TOKEN", "")
    CHAT_SERVICE_TIMEOUT_SECONDS = int(os.getenv("CHAT_SERVICE_TIMEOUT_SECONDS", "5"))
    SYSTEM_SENDER_ID = int(os.getenv("SYSTEM_SENDER_ID", "1"))

    # Audit file log
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "deal_audit.log")

    @staticmethod
    def is_agent_operator(user_id: Optional[int]) -> bool:
        """Whether the given identity is a configured agent/operator"""
        return user_id is not None and user_id in Config.AGENT_OPERATOR_IDS

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Deal Service Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {'configured' if Config.DATABASE_URL else 'NOT CONFIGURED'}")
        logger.info(f"   Agent operators: {len(Config.AGENT_OPERATOR_IDS)} configured")
        logger.info(
            f"   Holding period: {Config.HOLDING_PERIOD_DAYS} days for "
            f"{', '.join(Config.HOLD_REQUIRED_PLATFORMS) or 'no platforms'}"
        )
        logger.info(f"   Chat delivery: {Config.CHAT_SERVICE_URL or 'log only'}")

        if Config.NOWPAYMENTS_IPN_SECRET:
            logger.info("   NOWPAYMENTS_IPN_SECRET: ✅ Configured")
        elif Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_RISK: NOWPAYMENTS_IPN_SECRET not configured!")
        else:
            logger.warning("⚠️ NOWPAYMENTS_IPN_SECRET not configured - crypto webhooks will be rejected")

    @staticmethod
    def validate_configuration() -> List[str]:
        """Return a list of configuration problems; empty when the service can start"""
        problems = []
        if not Config.DATABASE_URL:
            problems.append("DATABASE_URL environment variable is required")
        if Config.HOLDING_PERIOD_DAYS <= 0:
            problems.append("HOLDING_PERIOD_DAYS must be positive")
        if Config.IS_PRODUCTION:
            if not Config.AGENT_OPERATOR_IDS:
                problems.append("AGENT_OPERATOR_IDS must list at least one operator in production")
            if not Config.NOWPAYMENTS_IPN_SECRET:
                problems.append("NOWPAYMENTS_IPN_SECRET is required in production")
        return problems
