"""Environment configuration and production fail-fast."""

import pytest

from waxhands_api.config.env import (
    DEFAULT_OPSTATE_TIMEOUT_SECONDS,
    is_production_env,
    load_robokassa_settings,
    load_settings,
)

_ENV_VARS = [
    "WAXHANDS_ENV",
    "NODE_ENV",
    "ROBOKASSA_MERCHANT_LOGIN",
    "ROBOKASSA_PASSWORD_1",
    "ROBOKASSA_PASSWORD_2",
    "ROBOKASSA_TEST_MODE",
    "ROBOKASSA_ALGORITHM",
    "ROBOKASSA_OPSTATE_TIMEOUT",
    "PAYMENT_SUCCESS_PAGE_URL",
    "PAYMENT_FAIL_PAGE_URL",
    "INTERNAL_API_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_outside_production():
    settings = load_settings()

    assert settings.robokassa.merchant_login == "waxhands.ru"
    assert settings.robokassa.algorithm == "md5"
    assert settings.robokassa.test_mode is False
    assert settings.robokassa.opstate_timeout == DEFAULT_OPSTATE_TIMEOUT_SECONDS
    assert settings.success_page_url == "https://waxhands.ru/payment/success"
    assert settings.fail_page_url == "https://waxhands.ru/payment/fail"
    assert settings.internal_api_token is None


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("ROBOKASSA_MERCHANT_LOGIN", "shop")
    monkeypatch.setenv("ROBOKASSA_PASSWORD_1", "p1")
    monkeypatch.setenv("ROBOKASSA_PASSWORD_2", "p2")
    monkeypatch.setenv("ROBOKASSA_TEST_MODE", "true")
    monkeypatch.setenv("ROBOKASSA_ALGORITHM", "SHA256")
    monkeypatch.setenv("ROBOKASSA_OPSTATE_TIMEOUT", "1.5")

    settings = load_robokassa_settings()

    assert (settings.merchant_login, settings.password1, settings.password2) == ("shop", "p1", "p2")
    assert settings.test_mode is True
    assert settings.algorithm == "sha256"
    assert settings.opstate_timeout == 1.5


def test_production_requires_passwords(monkeypatch):
    monkeypatch.setenv("WAXHANDS_ENV", "production")

    assert is_production_env() is True
    with pytest.raises(ValueError, match="ROBOKASSA_PASSWORD_1"):
        load_robokassa_settings()


def test_unsupported_algorithm_is_rejected(monkeypatch):
    monkeypatch.setenv("ROBOKASSA_ALGORITHM", "crc32")

    with pytest.raises(ValueError, match="ROBOKASSA_ALGORITHM"):
        load_robokassa_settings()


@pytest.mark.parametrize("value", ["soon", "0", "-1"])
def test_invalid_timeout_is_rejected(monkeypatch, value):
    monkeypatch.setenv("ROBOKASSA_OPSTATE_TIMEOUT", value)

    with pytest.raises(ValueError, match="ROBOKASSA_OPSTATE_TIMEOUT"):
        load_robokassa_settings()
