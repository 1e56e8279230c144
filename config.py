"""Configuration management for the milestone escrow marketplace"""

import os
import logging
from decimal import Decimal
from typing import Dict, List, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./escrow.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    # Platform fee policy (percent values, stored per project at creation)
    CLIENT_FEE_PERCENT = Decimal(os.getenv("CLIENT_FEE_PERCENT", "1.9"))
    FREELANCER_FEE_PERCENT = Decimal(os.getenv("FREELANCER_FEE_PERCENT", "3.6"))

    # Project and milestone limits, expressed in major units of the project currency
    MIN_PROJECT_BUDGET = Decimal(os.getenv("MIN_PROJECT_BUDGET", "50"))
    MAX_PROJECT_BUDGET = Decimal(os.getenv("MAX_PROJECT_BUDGET", "100000"))
    MIN_MILESTONE_AMOUNT = Decimal(os.getenv("MIN_MILESTONE_AMOUNT", "50"))

    # Crypto currencies cannot share fiat-sized limits
    CURRENCY_LIMIT_OVERRIDES: Dict[str, Dict[str, Decimal]] = {
        "JPY": {
            "min_budget": Decimal("5000"),
            "max_budget": Decimal("15000000"),
            "min_milestone": Decimal("5000"),
        },
        "BTC": {
            "min_budget": Decimal("0.001"),
            "max_budget": Decimal("10"),
            "min_milestone": Decimal("0.001"),
        },
        "ETH": {
            "min_budget": Decimal("0.01"),
            "max_budget": Decimal("200"),
            "min_milestone": Decimal("0.01"),
        },
    }

    # Milestone auto-approval
    DEFAULT_AUTO_APPROVE_DAYS = int(os.getenv("DEFAULT_AUTO_APPROVE_DAYS", "7"))
    MAX_AUTO_APPROVE_DAYS = int(os.getenv("MAX_AUTO_APPROVE_DAYS", "30"))
    AUTO_APPROVAL_WARNING_HOURS = int(os.getenv("AUTO_APPROVAL_WARNING_HOURS", "48"))

    # Dispute creation
    DISPUTE_REASON_MIN_LENGTH = int(os.getenv("DISPUTE_REASON_MIN_LENGTH", "10"))
    DISPUTE_REASON_MAX_LENGTH = int(os.getenv("DISPUTE_REASON_MAX_LENGTH", "1000"))
    DISPUTE_RAISE_COOLDOWN_HOURS = int(os.getenv("DISPUTE_RAISE_COOLDOWN_HOURS", "24"))
    MAX_EVIDENCE_FILE_SIZE_BYTES = int(
        os.getenv("MAX_EVIDENCE_FILE_SIZE_BYTES", str(10 * 1024 * 1024))
    )
    MAX_EVIDENCE_FILES = int(os.getenv("MAX_EVIDENCE_FILES", "10"))

    # Dispute fee: flat per-party amount, tiered by the disputed milestone value.
    # Each tier is (exclusive upper bound, fee); None is the open-ended top tier.
    DISPUTE_FEE_CURRENCY = os.getenv("DISPUTE_FEE_CURRENCY", "USD")
    DISPUTE_FEE_TIERS: List[Tuple[object, Decimal]] = [
        (Decimal("500"), Decimal("25")),
        (Decimal("2000"), Decimal("35")),
        (None, Decimal("50")),
    ]

    # Automated review and escalation
    AI_CONFIDENCE_THRESHOLD = int(os.getenv("AI_CONFIDENCE_THRESHOLD", "80"))
    MEDIATION_ESCALATION_HOURS = int(os.getenv("MEDIATION_ESCALATION_HOURS", "24"))
    MEDIATION_MESSAGE_THRESHOLD = int(os.getenv("MEDIATION_MESSAGE_THRESHOLD", "10"))
    SELF_RESOLUTION_ESCALATION_HOURS = int(
        os.getenv("SELF_RESOLUTION_ESCALATION_HOURS", "72")
    )
    APPEAL_WINDOW_DAYS = int(os.getenv("APPEAL_WINDOW_DAYS", "14"))

    # Background job cadence
    AUTO_APPROVAL_INTERVAL_MINUTES = int(os.getenv("AUTO_APPROVAL_INTERVAL_MINUTES", "60"))
    ESCALATION_CHECK_INTERVAL_MINUTES = int(
        os.getenv("ESCALATION_CHECK_INTERVAL_MINUTES", "30")
    )

    @classmethod
    def limits_for(cls, currency: str) -> Dict[str, Decimal]:
        """Budget and milestone limits for a currency, in major units"""
        limits = {
            "min_budget": cls.MIN_PROJECT_BUDGET,
            "max_budget": cls.MAX_PROJECT_BUDGET,
            "min_milestone": cls.MIN_MILESTONE_AMOUNT,
        }
        limits.update(cls.CURRENCY_LIMIT_OVERRIDES.get(currency, {}))
        return limits

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Escrow Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(
            f"   Fees: client {Config.CLIENT_FEE_PERCENT}% / freelancer {Config.FREELANCER_FEE_PERCENT}%"
        )
        logger.info(f"   Auto-approve after: {Config.DEFAULT_AUTO_APPROVE_DAYS} days")
        logger.info(
            f"   Mediation escalation: {Config.MEDIATION_ESCALATION_HOURS}h or "
            f"> {Config.MEDIATION_MESSAGE_THRESHOLD} messages"
        )
