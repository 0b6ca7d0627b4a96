import pytest
from pydantic import ValidationError

from wns_payments.settings import Settings


def _prod_settings(**overrides):
    values = {
        "app_env": "prod",
        "testing": False,
        "metrics_token": "metrics-secret",
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


def test_prod_settings_accept_complete_config():
    app_settings = _prod_settings()

    assert app_settings.app_env == "prod"
    assert app_settings.metrics_token == "metrics-secret"


def test_prod_requires_metrics_token_when_metrics_enabled():
    with pytest.raises(ValidationError, match="METRICS_TOKEN"):
        _prod_settings(metrics_token=None)


def test_prod_allows_missing_metrics_token_when_metrics_disabled():
    app_settings = _prod_settings(metrics_token=None, metrics_enabled=False)

    assert app_settings.metrics_enabled is False


def test_prod_refuses_testing_mode():
    with pytest.raises(ValidationError, match="testing mode"):
        _prod_settings(testing=True)


def test_strict_cors_in_prod_requires_explicit_origins():
    with pytest.raises(ValidationError, match="CORS_ORIGINS"):
        _prod_settings(strict_cors=True)

    with pytest.raises(ValidationError, match="wildcard"):
        _prod_settings(strict_cors=True, cors_origins="*")


def test_earnings_default_limit_must_not_exceed_max():
    with pytest.raises(ValidationError, match="EARNINGS_DEFAULT_LIMIT"):
        Settings(earnings_default_limit=50, earnings_max_limit=10, _env_file=None)


@pytest.mark.parametrize("field", ["checkout_max_quantity", "earnings_default_limit", "earnings_max_limit"])
def test_limits_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0}, _env_file=None)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("https://a.test, https://b.test", ["https://a.test", "https://b.test"]),
        ('["https://a.test", " https://b.test "]', ["https://a.test", "https://b.test"]),
        ("", []),
    ],
)
def test_cors_origins_parsing(raw, expected):
    app_settings = Settings(cors_origins=raw, _env_file=None)

    assert app_settings.cors_origins == expected


def test_default_currency_is_normalized():
    app_settings = Settings(default_currency=" eur ", _env_file=None)

    assert app_settings.default_currency == "EUR"


def test_default_currency_rejects_non_iso_codes():
    with pytest.raises(ValidationError):
        Settings(default_currency="EURO", _env_file=None)


def test_app_url_accepts_nextauth_alias(monkeypatch):
    monkeypatch.delenv("APP_URL", raising=False)
    monkeypatch.setenv("NEXTAUTH_URL", "https://groups.example.com")

    app_settings = Settings(_env_file=None)

    assert app_settings.app_url == "https://groups.example.com"
