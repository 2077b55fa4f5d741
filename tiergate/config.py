"""Runtime configuration helpers."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Settings:
    """Configuration for the entitlement and quota service."""

    stripe_webhook_secret: str
    stripe_secret_key: str
    stripe_webhook_tolerance: int
    webhook_timeout_seconds: float
    ledger_backend: str
    ledger_timeout_seconds: float
    db_config: Dict[str, Any]
    db_connect_timeout: float
    price_tier_map: Dict[str, str] = field(default_factory=dict)
    meter_costs: Dict[str, float] = field(default_factory=dict)
    tier_limits: Dict[str, int] = field(default_factory=dict)
    low_balance_floor: int = 1000
    low_balance_ratio: float = 0.05
    relay_transport: str = "local"
    log_level: str = "INFO"


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_pairs(value: Optional[str], *, name: str) -> Dict[str, str]:
    """Parse ``key=value,key=value`` into a mapping."""

    pairs: Dict[str, str] = {}
    if not value:
        return pairs
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        key, sep, item = chunk.partition("=")
        if not sep or not key.strip() or not item.strip():
            raise ValueError(f"Malformed {name} entry {chunk!r}; expected key=value")
        pairs[key.strip()] = item.strip()
    return pairs


def _choice(value: Optional[str], *, default: str, allowed: set[str], name: str) -> str:
    resolved = (value or default).strip().lower() or default
    if resolved not in allowed:
        raise ValueError(f"Unsupported {name} {resolved!r}; expected one of {sorted(allowed)}")
    return resolved


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load :class:`Settings` from environment variables."""

    env_mapping = os.environ if env is None else env

    price_tier_map = {
        price_id: tier.lower()
        for price_id, tier in _to_pairs(env_mapping.get("PRICE_TIER_MAP"), name="PRICE_TIER_MAP").items()
    }
    meter_costs = {
        meter: _to_float(cost, default=0.0)
        for meter, cost in _to_pairs(env_mapping.get("METER_COSTS"), name="METER_COSTS").items()
    }
    tier_limits = {
        "free": _to_int(env_mapping.get("TIER_LIMIT_FREE"), default=10_000),
        "lite": _to_int(env_mapping.get("TIER_LIMIT_LITE"), default=100_000),
        "full": _to_int(env_mapping.get("TIER_LIMIT_FULL"), default=1_602_000),
    }
    if any(limit < 0 for limit in tier_limits.values()):
        raise ValueError("Tier limits must be non-negative")

    db_config: Dict[str, Any] = {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "database": env_mapping.get("DB_NAME", "tiergate"),
        "user": env_mapping.get("DB_USER", "tiergate"),
        "password": env_mapping.get("DB_PASSWORD", "tiergate"),
    }

    log_level = (env_mapping.get("LOG_LEVEL") or "INFO").strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ValueError(f"Unknown LOG_LEVEL {log_level!r}")

    return Settings(
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET", ""),
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY", ""),
        stripe_webhook_tolerance=max(0, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE"), default=300)),
        webhook_timeout_seconds=max(0.1, _to_float(env_mapping.get("WEBHOOK_TIMEOUT_SECONDS"), default=10.0)),
        ledger_backend=_choice(
            env_mapping.get("LEDGER_BACKEND"),
            default="postgres",
            allowed={"postgres", "memory"},
            name="LEDGER_BACKEND",
        ),
        ledger_timeout_seconds=max(0.05, _to_float(env_mapping.get("LEDGER_TIMEOUT_SECONDS"), default=2.0)),
        db_config=db_config,
        db_connect_timeout=_to_float(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5.0),
        price_tier_map=price_tier_map,
        meter_costs=meter_costs,
        tier_limits=tier_limits,
        low_balance_floor=max(0, _to_int(env_mapping.get("LOW_BALANCE_FLOOR"), default=1000)),
        low_balance_ratio=max(0.0, _to_float(env_mapping.get("LOW_BALANCE_RATIO"), default=0.05)),
        relay_transport=_choice(
            env_mapping.get("RELAY_TRANSPORT"),
            default="local",
            allowed={"local", "postgres"},
            name="RELAY_TRANSPORT",
        ),
        log_level=log_level,
    )


def configure_logging(settings: Settings) -> None:
    """Apply the configured root log level."""

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(settings.log_level)
