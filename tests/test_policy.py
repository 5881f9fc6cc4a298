"""Tests for engine policy loading."""

import json
import pytest
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from tradeguard.policy import EngineConfig


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

ADMIN = "0x29e83cdc91a0e06a8180e193df23ca3f5093017f"


class TestEngineConfig:
    def test_shipped_policy_loads(self) -> None:
        config = EngineConfig.from_config_dir(CONFIG_DIR, env={})
        assert config.is_admin(ADMIN)
        assert config.fallback_rate("inr") == Decimal("83.50")
        assert config.validator_reward == Decimal("0.05")
        assert config.order_expiry == timedelta(minutes=15)
        assert config.validation_timeout == timedelta(hours=1)
        assert config.dispute_window == timedelta(hours=24)
        assert config.stake_lock_window == timedelta(hours=24)

    def test_defaults_match_shipped_policy(self) -> None:
        shipped = EngineConfig.from_config_dir(CONFIG_DIR, env={})
        defaults = EngineConfig()
        assert defaults.max_order_usdc == shipped.max_order_usdc
        assert defaults.min_validator_stake == shipped.min_validator_stake
        assert defaults.fallback_rates == shipped.fallback_rates

    def test_unknown_currency_falls_back_to_one(self) -> None:
        assert EngineConfig().fallback_rate("XYZ") == Decimal("1")

    def test_missing_file_uses_defaults(self, tmp_path) -> None:
        config = EngineConfig.from_config_dir(tmp_path, env={})
        assert config == EngineConfig()

    def test_unknown_keys_rejected(self, tmp_path) -> None:
        (tmp_path / "engine_policy.json").write_text(
            json.dumps({"validatr_reward": "1"}), encoding="utf-8")
        with pytest.raises(ValueError, match="validatr_reward"):
            EngineConfig.from_config_dir(tmp_path, env={})

    def test_env_overrides(self) -> None:
        config = EngineConfig.from_config_dir(CONFIG_DIR, env={
            "TRADEGUARD_ADMINS": "0xABC, 0xdef",
            "TRADEGUARD_VALIDATOR_REWARD": "0.10",
            "TRADEGUARD_FALLBACK_THRESHOLD": "5",
            "TRADEGUARD_DB_PATH": "/tmp/tg.db",
        })
        assert config.admin_addresses == frozenset({"0xabc", "0xdef"})
        assert not config.is_admin(ADMIN)
        assert config.validator_reward == Decimal("0.10")
        assert config.fallback_threshold == 5
        assert config.db_path == "/tmp/tg.db"

    def test_empty_env_is_identity(self) -> None:
        config = EngineConfig()
        assert config.with_env_overrides({}) is config

    def test_blank_admin_is_not_admin(self) -> None:
        assert not EngineConfig().is_admin("")
        assert not EngineConfig().is_admin(None)
