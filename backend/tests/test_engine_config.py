"""Engine configuration: defaults, validated updates and tolerant loading."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import math

import pytest

from models.database import EngineConfigEntry
from services.config_validator import ConfigValidator
from services.engine_config import (
    DEFAULT_ENGINE_CONFIG,
    EngineConfig,
    load_engine_config,
    update_engine_config,
)
from utils.errors import ConfigValidationError


class TestConfigValidator:
    def setup_method(self):
        self.validator = ConfigValidator()

    def test_defaults_are_valid(self):
        result = self.validator.validate_all(DEFAULT_ENGINE_CONFIG)
        assert result.valid, result.errors
        assert result.warnings == []

    @pytest.mark.parametrize(
        "updates",
        [
            {"wallet_count": 0},
            {"wallet_count": 51},
            {"wallet_count": 5.5},
            {"wallet_count": True},
            {"time_window_min": 61},
            {"required_leverage_min": 0},
            {"poll_interval_sec": 29},
            {"price_poll_interval_sec": 301},
            {"min_trade_size": -1},
            {"min_trade_size": math.inf},
            {"default_sl_percent": 0},
            {"default_sl_percent": -50},
            {"default_sl_percent": 2.5},
            {"tps_percent": []},
            {"tps_percent": [2.0, 2.0]},
            {"tps_percent": [3.0, 2.0]},
            {"tps_percent": [0, 2.0]},
            {"tps_percent": [50, 101]},
            {"monitored_pairs": ["eth"]},
            {"ignored_pairs": "BTC"},
        ],
    )
    def test_rejects_out_of_range_values(self, updates):
        result = self.validator.validate_updates(updates)
        assert result.valid is False
        assert len(result.errors) == 1

    def test_reports_every_error_at_once(self):
        result = self.validator.validate_updates(
            {"wallet_count": 0, "default_sl_percent": 5, "tps_percent": [5, 1]}
        )
        assert result.valid is False
        assert len(result.errors) == 3

    def test_unknown_key_and_overlap_are_warnings(self):
        result = self.validator.validate_updates(
            {"colour": "blue", "monitored_pairs": ["BTC", "ETH"], "ignored_pairs": ["ETH"]}
        )
        assert result.valid is True
        assert len(result.warnings) == 2


class TestEngineConfigModel:
    def test_pair_filters(self):
        config = EngineConfig(monitored_pairs=["BTC", "ETH"], ignored_pairs=["ETH"])
        assert config.is_pair_allowed("BTC")
        assert not config.is_pair_allowed("ETH")
        assert not config.is_pair_allowed("SOL")
        assert EngineConfig().is_pair_allowed("SOL")

    def test_time_window_seconds(self):
        assert EngineConfig(time_window_min=10).time_window_seconds == 600


@pytest.mark.asyncio
async def test_seeded_defaults_load(session_factory):
    async with session_factory() as session:
        config = await load_engine_config(session)
    assert config == DEFAULT_ENGINE_CONFIG


@pytest.mark.asyncio
async def test_valid_update_is_persisted(session_factory):
    async with session_factory() as session:
        config = await update_engine_config(
            session, {"wallet_count": 3, "tps_percent": [1.0, 2.0]}, updated_by="admin"
        )
        assert config.wallet_count == 3
        row = await session.get(EngineConfigEntry, "wallet_count")
        assert row.updated_by == "admin"

    async with session_factory() as session:
        reloaded = await load_engine_config(session)
    assert reloaded.wallet_count == 3
    assert reloaded.tps_percent == [1.0, 2.0]


@pytest.mark.asyncio
async def test_invalid_update_writes_nothing(session_factory):
    async with session_factory() as session:
        with pytest.raises(ConfigValidationError) as exc_info:
            await update_engine_config(session, {"wallet_count": 3, "default_sl_percent": 1})
    assert len(exc_info.value.errors) == 1

    async with session_factory() as session:
        assert (await load_engine_config(session)).wallet_count == DEFAULT_ENGINE_CONFIG.wallet_count


@pytest.mark.asyncio
async def test_malformed_stored_value_falls_back_to_default(session_factory):
    async with session_factory() as session:
        row = await session.get(EngineConfigEntry, "time_window_min")
        row.value = "ten minutes"
        session.add(EngineConfigEntry(key="legacy_key", value=1))
        await session.commit()

        config = await load_engine_config(session)
    assert config.time_window_min == DEFAULT_ENGINE_CONFIG.time_window_min
