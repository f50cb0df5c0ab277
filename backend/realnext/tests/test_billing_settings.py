"""Tests for the billing.yml loader."""

from decimal import Decimal

from realnext.config.billing_settings import (
    BillingSettings,
    get_billing_settings,
    reset_billing_settings,
)


def test_packaged_defaults(monkeypatch):
    monkeypatch.delenv("REALNEXT_BILLING_CONFIG", raising=False)

    settings = get_billing_settings()

    assert settings.currency == "INR"
    assert settings.tax_rate == Decimal("0.18")
    assert settings.invoice_prefix == "INV"
    assert settings.invoice_padding == 5
    assert settings.invoice_max_attempts == 5
    assert settings.default_plan_code == "starter"


def test_singleton():
    assert get_billing_settings() is get_billing_settings()


def test_explicit_path_overrides_per_key(tmp_path):
    config = tmp_path / "billing.yml"
    config.write_text(
        "currency: USD\n"
        "invoice:\n"
        "  prefix: RN\n"
        "  max_number_attempts: 0\n"
    )

    settings = get_billing_settings(str(config))

    assert settings.currency == "USD"
    assert settings.invoice_prefix == "RN"
    # untouched keys in the same section keep their defaults
    assert settings.invoice_padding == 5
    assert settings.invoice_max_attempts == 1
    assert settings.tax_rate == Decimal("0")
    assert settings.get_all()["subscription"]["default_billing_cycle"] == "monthly"


def test_env_var(tmp_path, monkeypatch):
    config = tmp_path / "custom.yml"
    config.write_text("subscription:\n  default_plan_code: pro\n")
    monkeypatch.setenv("REALNEXT_BILLING_CONFIG", str(config))

    assert get_billing_settings().default_plan_code == "pro"


def test_missing_file_falls_back(tmp_path):
    settings = BillingSettings(str(tmp_path / "nope.yml"))

    assert settings.get_all()["invoice"]["prefix"] == "INV"
    assert settings.proration_days_per_month == 30


def test_reload(tmp_path):
    config = tmp_path / "billing.yml"
    config.write_text("invoice:\n  due_days: 7\n")
    settings = get_billing_settings(str(config))

    config.write_text("invoice:\n  due_days: 14\n")
    settings.reload()

    assert settings.invoice_due_days == 14
    reset_billing_settings()
