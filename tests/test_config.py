"""Carga de configuración desde variables de entorno."""

import pytest

from config import BotConfig, TakeProfitConfig, load_config, validate_config

ENV_VARS = (
    "MODE",
    "SOLANA_RPC_URL",
    "HELIUS_RPC_URL",
    "WALLET_PRIVATE_KEY",
    "TELEGRAM_CHAT_ID",
    "STOP_LOSS_PERCENT",
    "TAKE_PROFIT_1_PERCENT",
    "STOP_RATCHET_MULTIPLIERS",
    "MAX_SELL_RETRIES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_defaults(self):
        config = load_config()

        assert config.mode == "simulation"
        assert config.rpc_url is None
        assert config.stop_loss_percent == 50.0
        assert [tp.percentage for tp in config.take_profit_levels] == [100.0, 300.0, 900.0]
        assert config.stop_ratchet_multipliers == (1.0, 2.0, 5.0)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MODE", "REAL")
        monkeypatch.setenv("HELIUS_RPC_URL", "https://rpc.example")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "12345")
        monkeypatch.setenv("STOP_LOSS_PERCENT", "30")
        monkeypatch.setenv("TAKE_PROFIT_1_PERCENT", "50")
        monkeypatch.setenv("STOP_RATCHET_MULTIPLIERS", "1.0, 1.5")
        monkeypatch.setenv("MAX_SELL_RETRIES", "5")

        config = load_config()

        assert config.mode == "real"
        assert config.rpc_url == "https://rpc.example"
        assert config.telegram_chat_id == 12345
        assert config.stop_loss_percent == 30.0
        assert config.take_profit_levels[0].percentage == 50.0
        assert config.stop_ratchet_multipliers == (1.0, 1.5)
        assert config.max_sell_retries == 5

    def test_invalid_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("MODE", "yolo")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "abc")
        monkeypatch.setenv("STOP_LOSS_PERCENT", "mucho")
        monkeypatch.setenv("STOP_RATCHET_MULTIPLIERS", "x,y")

        config = load_config()

        assert config.mode == "simulation"
        assert config.telegram_chat_id is None
        assert config.stop_loss_percent == 50.0
        assert config.stop_ratchet_multipliers == (1.0, 2.0, 5.0)


class TestValidateConfig:
    def test_rpc_required(self):
        errors, _ = validate_config(BotConfig())
        assert any("RPC" in e for e in errors)

    def test_real_mode_requires_wallet(self):
        errors, _ = validate_config(BotConfig(mode="real", rpc_url="http://x"))
        assert any("WALLET_PRIVATE_KEY" in e for e in errors)

    def test_simulation_without_wallet_only_warns(self):
        errors, warnings = validate_config(BotConfig(rpc_url="http://x"))
        assert errors == []
        assert any("WALLET_PRIVATE_KEY" in w for w in warnings)

    def test_unordered_take_profits_warn(self):
        config = BotConfig(
            rpc_url="http://x",
            wallet_private_key="k",
            take_profit_levels=[TakeProfitConfig(300.0, 50.0), TakeProfitConfig(100.0, 50.0)],
        )
        errors, warnings = validate_config(config)
        assert errors == []
        assert any("Take profit 1" in w for w in warnings)

    def test_retry_ceiling_must_be_positive(self):
        errors, _ = validate_config(BotConfig(rpc_url="http://x", max_sell_retries=0))
        assert any("MAX_SELL_RETRIES" in e for e in errors)
