"""
Unit tests for configuration
"""

from types import SimpleNamespace

import pytest

import config.config as cfg


def test_config_defaults():
    """Test trading and monitor defaults"""
    assert cfg.SOL_MINT == "So11111111111111111111111111111111111111112"
    assert cfg.LAMPORTS_PER_SOL == 1_000_000_000
    assert cfg.TradingDefaults.EXIT_SLIPPAGE_LADDER_BPS == (300, 500, 1000, 2000)
    assert cfg.TradingDefaults.FEE_BUFFER_LAMPORTS == 50_000
    assert cfg.WalletDefaults.MAX_TRADES_PER_WALLET > 0

    monitor = cfg.MonitorConfig()
    assert monitor.interval_sec > 0
    assert monitor.order in ("oldest_first", "newest_first")


def test_validate_config_passes_in_development(monkeypatch):
    monkeypatch.setattr(cfg, "ENVIRONMENT", "development")
    assert cfg.validate_config() is True


def test_validate_config_rejects_default_secrets_in_production(monkeypatch):
    """Default JWT secrets are only acceptable outside production"""
    monkeypatch.setattr(cfg, "ENVIRONMENT", "production")
    monkeypatch.setattr(cfg, "JWT_SECRET", cfg.DEFAULT_JWT_SECRET)
    monkeypatch.setattr(cfg, "REFRESH_TOKEN_SECRET", cfg.DEFAULT_REFRESH_SECRET)

    with pytest.raises(ValueError) as exc_info:
        cfg.validate_config()

    message = str(exc_info.value)
    assert "JWT_SECRET must be changed in production" in message
    assert "REFRESH_TOKEN_SECRET must be changed in production" in message


def test_validate_config_missing_values(monkeypatch):
    monkeypatch.setattr(cfg, "DATABASE_URL", "")
    monkeypatch.setattr(cfg, "SOLANA_RPC_URL", "")

    with pytest.raises(ValueError, match="DATABASE_URL is required"):
        cfg.validate_config()


def test_validate_config_monitor_order(monkeypatch):
    monkeypatch.setattr(cfg, "MonitorConfig", lambda: SimpleNamespace(order="random"))

    with pytest.raises(ValueError, match="TRADE_MONITOR_ORDER"):
        cfg.validate_config()
