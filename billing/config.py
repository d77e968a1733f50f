import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}

DEFAULT_DATABASE_URL = "sqlite:///billing.db"
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


@dataclass(frozen=True)
class CreditPack:
    pack_id: str
    label: str
    credits: int
    price_cents: int
    description: str = ""
    currency: str = "usd"

    @property
    def price_display(self) -> str:
        return f"${self.price_cents // 100}.{self.price_cents % 100:02d}"


DEFAULT_CREDIT_PACKS = (
    CreditPack(pack_id="starter", label="Starter", credits=5, price_cents=499, description="5 Evidence+ATS scans"),
    CreditPack(pack_id="pro", label="Pro", credits=15, price_cents=1299, description="15 scans + outreach packs"),
    CreditPack(pack_id="power", label="Power", credits=50, price_cents=3499, description="50 scans for heavy users"),
)


@dataclass(frozen=True)
class FeatureFlags:
    # Refund and chargeback events land in the queue either way; this only
    # controls whether admins may act on them.
    refund_queue_actions_enabled: bool = True
    signup_bonus_enabled: bool = True


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    cors_allow_origins: tuple[str, ...] = tuple(DEFAULT_CORS_ORIGINS)
    signup_bonus_credits: int = 3
    max_refund_debit: int = 1000
    ledger_max_retries: int = 5
    log_level: str = "INFO"
    credit_packs: tuple[CreditPack, ...] = DEFAULT_CREDIT_PACKS
    flags: FeatureFlags = field(default_factory=FeatureFlags)

    def get_pack(self, pack_id: Optional[str]) -> Optional[CreditPack]:
        if not pack_id:
            return None
        for pack in self.credit_packs:
            if pack.pack_id == pack_id:
                return pack
        return None


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_ENV_VALUES


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def parse_cors_origins(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return tuple(DEFAULT_CORS_ORIGINS)
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    return tuple(origins or DEFAULT_CORS_ORIGINS)


def load_settings() -> Settings:
    """Read the process environment (and .env, if present) into a frozen snapshot."""
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        cors_allow_origins=parse_cors_origins(os.getenv("CORS_ALLOW_ORIGINS")),
        signup_bonus_credits=env_int("SIGNUP_BONUS_CREDITS", 3),
        max_refund_debit=env_int("MAX_REFUND_DEBIT", 1000),
        ledger_max_retries=env_int("LEDGER_MAX_RETRIES", 5),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        flags=FeatureFlags(
            refund_queue_actions_enabled=env_flag("REFUND_QUEUE_ACTIONS_ENABLED", True),
            signup_bonus_enabled=env_flag("SIGNUP_BONUS_ENABLED", True),
        ),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("billing")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(handler)
