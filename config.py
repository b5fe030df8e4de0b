"""
Runtime configuration.

Process-level values come from the environment once at import. Store pricing policy
(tax, shipping) starts from environment defaults and can be overridden by the
admin-managed `settings` document.
"""
import os
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"

PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "whsec-dev-change-me")
PAYMENT_WEBHOOK_TOLERANCE = int(os.getenv("PAYMENT_WEBHOOK_TOLERANCE", "300"))

CHECKOUT_CLAIM_TIMEOUT = int(os.getenv("CHECKOUT_CLAIM_TIMEOUT", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


class StoreSettings(BaseModel):
    currency: str = "USD"
    tax_enabled: bool = True
    tax_rate: float = Field(0.10, ge=0, le=1)
    shipping_flat_rate: float = Field(5.0, ge=0)
    free_shipping_threshold: Optional[float] = Field(50.0, ge=0)
    express_shipping_rate: float = Field(15.0, ge=0)
    low_stock_threshold: int = Field(10, ge=0)

    @classmethod
    def from_env(cls) -> "StoreSettings":
        threshold = os.getenv("FREE_SHIPPING_THRESHOLD", "50")
        return cls(
            currency=os.getenv("CURRENCY", "USD").upper(),
            tax_enabled=_env_bool("TAX_ENABLED", True),
            tax_rate=float(os.getenv("TAX_RATE", "0.10")),
            shipping_flat_rate=float(os.getenv("SHIPPING_FLAT_RATE", "5.0")),
            free_shipping_threshold=float(threshold) if threshold else None,
            express_shipping_rate=float(os.getenv("EXPRESS_SHIPPING_RATE", "15.0")),
            low_stock_threshold=int(os.getenv("LOW_STOCK_THRESHOLD", "10")),
        )

    def merged(self, document: Optional[Dict[str, Any]]) -> "StoreSettings":
        """Overlay a stored `settings` document (camelCase, as the admin console writes it)."""
        if not document:
            return self
        update: Dict[str, Any] = {}
        if document.get("currency"):
            update["currency"] = str(document["currency"]).upper()
        tax = document.get("tax") or {}
        if "enabled" in tax:
            update["tax_enabled"] = bool(tax["enabled"])
        if tax.get("rate") is not None:
            update["tax_rate"] = float(tax["rate"])
        shipping = document.get("shipping") or {}
        if shipping.get("flatRate") is not None:
            update["shipping_flat_rate"] = float(shipping["flatRate"])
        if "freeShippingThreshold" in shipping:
            value = shipping["freeShippingThreshold"]
            update["free_shipping_threshold"] = float(value) if value is not None else None
        if shipping.get("expressRate") is not None:
            update["express_shipping_rate"] = float(shipping["expressRate"])
        if not update:
            return self
        return StoreSettings(**{**self.model_dump(), **update})
