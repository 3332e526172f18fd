import pytest

from wallet_ledger.config import Settings
from wallet_ledger.exceptions import ConfigurationError
from wallet_ledger.main import create_app


def test_currency_list_from_environment(monkeypatch):
    monkeypatch.setenv("SUPPORTED_CURRENCIES", "btc, eth ,usdt")
    settings = Settings(_env_file=None)
    assert settings.SUPPORTED_CURRENCIES == ["BTC", "ETH", "USDT"]


def test_legacy_webhook_secret_name(monkeypatch):
    monkeypatch.delenv("COINGATE_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("CRYPTO_WEBHOOK_SECRET", "legacy")
    assert Settings(_env_file=None).COINGATE_WEBHOOK_SECRET == "legacy"


def test_production_without_secret_refuses_to_start():
    settings = Settings(_env_file=None, ENVIRONMENT="production", COINGATE_WEBHOOK_SECRET=None)
    assert settings.is_production
    with pytest.raises(ConfigurationError):
        create_app(settings)


def test_production_with_secret_builds_app():
    settings = Settings(_env_file=None, ENVIRONMENT="production", COINGATE_WEBHOOK_SECRET="s3cret")
    app = create_app(settings)
    assert app.title == "Wallet Ledger Service"
