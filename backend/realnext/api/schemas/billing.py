"""
Pydantic schemas for invoice line items and payment-gateway callbacks.

Gateway payloads follow the Razorpay webhook envelope:
    {"event": "payment.captured",
     "payload": {"payment": {"entity": {...}}, "refund": {"entity": {...}}}}
Amounts arrive in minor units (paise) and are converted to Decimal.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LineItem(BaseModel):
    """One invoice line. Order within an invoice is preserved."""
    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., description="Unit amount in major currency units")
    quantity: int = Field(default=1, ge=1)

    def to_json(self) -> Dict[str, Any]:
        """JSON-safe dict for Invoice.line_items."""
        return {
            "description": self.description,
            "amount": str(self.amount),
            "quantity": self.quantity,
        }


class GatewayPaymentEntity(BaseModel):
    """payment.entity in a gateway webhook."""
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: Optional[str] = None
    amount: int = Field(default=0, description="Minor units")
    currency: str = "INR"
    status: Optional[str] = None
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes_as_dict(cls, value):
        # Razorpay sends [] for empty notes
        if not value:
            return {}
        return value

    @property
    def amount_decimal(self) -> Decimal:
        return (Decimal(self.amount) / Decimal(100)).quantize(Decimal("0.01"))


class GatewayRefundEntity(BaseModel):
    """refund.entity in a gateway webhook."""
    model_config = ConfigDict(extra="ignore")

    id: str
    payment_id: str
    amount: int = Field(default=0, description="Minor units")
    currency: str = "INR"
    status: Optional[str] = None

    @property
    def amount_decimal(self) -> Decimal:
        return (Decimal(self.amount) / Decimal(100)).quantize(Decimal("0.01"))


class GatewayWebhookEvent(BaseModel):
    """Parsed gateway webhook."""
    model_config = ConfigDict(extra="ignore")

    event: str
    payment: Optional[GatewayPaymentEntity] = None
    refund: Optional[GatewayRefundEntity] = None
    contains: List[str] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "GatewayWebhookEvent":
        """Unwrap the {"payload": {"x": {"entity": ...}}} envelope."""
        envelope = raw.get("payload") or {}
        payment = (envelope.get("payment") or {}).get("entity")
        refund = (envelope.get("refund") or {}).get("entity")
        return cls(
            event=raw.get("event", ""),
            payment=payment,
            refund=refund,
            contains=raw.get("contains") or [],
        )
