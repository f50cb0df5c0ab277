"""
Billing settings loader.

Loads invoice numbering, proration and default-plan policy from
config/billing.yml (packaged next to this module).

Path resolution order:
  1. explicit config_path argument
  2. REALNEXT_BILLING_CONFIG environment variable
  3. realnext/config/billing.yml, then ./config/billing.yml

Usage:
    from realnext.config.billing_settings import get_billing_settings

    settings = get_billing_settings()
    settings.invoice_max_attempts  # 5
"""

import logging
import os
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_DEFAULTS: Dict[str, Any] = {
    "currency": "INR",
    "tax_rate": "0",
    "invoice": {
        "prefix": "INV",
        "padding": 5,
        "max_number_attempts": 5,
        "due_days": 7,
    },
    "proration": {
        "days_per_month": 30,
        "line_item_description": "Plan upgrade proration",
    },
    "subscription": {
        "default_plan_code": "starter",
        "default_billing_cycle": "monthly",
    },
}


class BillingSettings:
    """
    Thread-safe singleton loader for billing.yml.

    Missing keys fall back to built-in defaults section by section.
    """

    _instance: Optional["BillingSettings"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        env_path = os.getenv("REALNEXT_BILLING_CONFIG")
        if env_path:
            return Path(env_path)

        candidates = [
            Path(__file__).parent / "billing.yml",
            Path(os.getcwd()) / "config" / "billing.yml",
        ]
        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"billing.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading billing settings from %s", path)
                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning("billing.yml not found, using fallback defaults")
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def _section(self, name: str) -> Dict[str, Any]:
        merged = dict(_DEFAULTS.get(name, {}))
        merged.update(self._raw.get(name) or {})
        return merged

    @property
    def currency(self) -> str:
        return self._raw.get("currency", _DEFAULTS["currency"])

    @property
    def invoice_prefix(self) -> str:
        return str(self._section("invoice")["prefix"])

    @property
    def invoice_padding(self) -> int:
        return int(self._section("invoice")["padding"])

    @property
    def invoice_max_attempts(self) -> int:
        return max(1, int(self._section("invoice")["max_number_attempts"]))

    @property
    def invoice_due_days(self) -> int:
        return int(self._section("invoice")["due_days"])

    @property
    def proration_days_per_month(self) -> int:
        return int(self._section("proration")["days_per_month"])

    @property
    def tax_rate(self) -> Decimal:
        return Decimal(str(self._raw.get("tax_rate", _DEFAULTS["tax_rate"])))

    @property
    def proration_description(self) -> str:
        return self._section("proration")["line_item_description"]

    @property
    def default_plan_code(self) -> str:
        return self._section("subscription")["default_plan_code"]

    @property
    def default_billing_cycle(self) -> str:
        return self._section("subscription")["default_billing_cycle"]

    def get_all(self) -> Dict[str, Any]:
        """Effective settings, defaults applied."""
        return {
            "version": self._raw.get("version", 1),
            "currency": self.currency,
            "tax_rate": str(self.tax_rate),
            "invoice": self._section("invoice"),
            "proration": self._section("proration"),
            "subscription": self._section("subscription"),
        }


def get_billing_settings(config_path: Optional[str] = None) -> BillingSettings:
    """Return the singleton BillingSettings."""
    return BillingSettings(config_path)


def reset_billing_settings() -> None:
    """Reset singleton (for tests only)."""
    BillingSettings._instance = None
