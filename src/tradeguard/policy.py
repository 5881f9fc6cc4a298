"""Engine policy — every tunable constant in one frozen config object.

Loaded from a config directory (``engine_policy.json``) with optional
environment overrides. A ``.env`` file in the working directory is
honoured via python-dotenv so deployments can set the admin allow-list
and reward without editing the JSON.

Environment overrides:
    TRADEGUARD_ADMINS              comma-separated admin addresses
    TRADEGUARD_VALIDATOR_REWARD    per-review reward in USDC
    TRADEGUARD_FALLBACK_THRESHOLD  threshold when no validator is eligible
    TRADEGUARD_DB_PATH             SQLite database used by the CLI
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv


POLICY_FILENAME = "engine_policy.json"


@dataclass(frozen=True)
class EngineConfig:
    """Tunable engine constants. Defaults mirror config/engine_policy.json."""
    order_expiry_minutes: int = 15
    max_order_usdc: Decimal = Decimal("10000")
    default_fiat_limit: Decimal = Decimal("5000")
    validation_timeout_minutes: int = 60
    fallback_threshold: int = 3
    validator_reward: Decimal = Decimal("0.05")
    min_validator_stake: Decimal = Decimal("100")
    stake_lock_hours: int = 24
    dispute_window_hours: int = 24
    rate_cache_ttl_seconds: int = 60
    fallback_rates: dict[str, Decimal] = field(default_factory=lambda: {
        "INR": Decimal("83.50"),
        "USD": Decimal("1.00"),
        "BRL": Decimal("5.62"),
        "EUR": Decimal("0.94"),
    })
    ledger_timeout_seconds: float = 4.0
    evidence_timeout_seconds: float = 5.0
    admin_addresses: frozenset[str] = frozenset()
    mediation_contact: str = ""
    meeting_url_base: str = "https://meet.jit.si/tradeguard-dispute"
    db_path: Optional[str] = None

    @property
    def order_expiry(self) -> timedelta:
        return timedelta(minutes=self.order_expiry_minutes)

    @property
    def validation_timeout(self) -> timedelta:
        return timedelta(minutes=self.validation_timeout_minutes)

    @property
    def stake_lock_window(self) -> timedelta:
        return timedelta(hours=self.stake_lock_hours)

    @property
    def dispute_window(self) -> timedelta:
        return timedelta(hours=self.dispute_window_hours)

    def is_admin(self, address: Optional[str]) -> bool:
        if not address:
            return False
        return address.strip().lower() in self.admin_addresses

    def fallback_rate(self, currency: str) -> Decimal:
        return self.fallback_rates.get(currency.upper(), Decimal("1"))

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> EngineConfig:
        """Build a config from a parsed policy document.

        Unknown keys are rejected so typos do not silently fall back to
        defaults.
        """
        known = set(EngineConfig.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown policy keys: {sorted(unknown)}")

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in ("max_order_usdc", "default_fiat_limit",
                       "validator_reward", "min_validator_stake"):
                kwargs[key] = Decimal(str(value))
            elif key == "fallback_rates":
                kwargs[key] = {
                    str(k).upper(): Decimal(str(v)) for k, v in value.items()
                }
            elif key == "admin_addresses":
                kwargs[key] = _normalise_addresses(value)
            else:
                kwargs[key] = value
        return EngineConfig(**kwargs)

    @staticmethod
    def from_config_dir(
        config_dir: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> EngineConfig:
        """Load engine_policy.json from a directory and apply env overrides.

        When ``env`` is None the process environment is used, after
        loading any ``.env`` file found by python-dotenv.
        """
        path = Path(config_dir) / POLICY_FILENAME
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            data = {}
        config = EngineConfig.from_dict(data)

        if env is None:
            load_dotenv()
            env = os.environ
        return config.with_env_overrides(env)

    def with_env_overrides(self, env: Mapping[str, str]) -> EngineConfig:
        """Return a copy with TRADEGUARD_* environment overrides applied."""
        changes: dict[str, Any] = {}
        admins = env.get("TRADEGUARD_ADMINS")
        if admins:
            changes["admin_addresses"] = _normalise_addresses(admins.split(","))
        reward = env.get("TRADEGUARD_VALIDATOR_REWARD")
        if reward:
            changes["validator_reward"] = Decimal(reward)
        threshold = env.get("TRADEGUARD_FALLBACK_THRESHOLD")
        if threshold:
            changes["fallback_threshold"] = int(threshold)
        db_path = env.get("TRADEGUARD_DB_PATH")
        if db_path:
            changes["db_path"] = db_path
        if not changes:
            return self
        return replace(self, **changes)


def _normalise_addresses(values: Any) -> frozenset[str]:
    return frozenset(
        str(v).strip().lower() for v in values if str(v).strip()
    )
