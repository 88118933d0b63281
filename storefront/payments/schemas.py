from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentNotification(BaseModel):
    """Inbound provider notification (Snap HTTP notification body)."""

    model_config = ConfigDict(extra="allow")

    order_id: str = Field(min_length=1)  # our correlation id
    transaction_id: Optional[str] = None
    transaction_status: str = Field(min_length=1)
    status_code: str = Field(min_length=1)
    gross_amount: str = Field(min_length=1)
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    transaction_time: Optional[datetime] = None
    signature_key: str = Field(min_length=1)

    @field_validator("transaction_time", mode="before")
    @classmethod
    def parse_provider_time(cls, value):
        # Provider sends "YYYY-MM-DD HH:MM:SS"
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            return value.replace(" ", "T", 1)
        return value

    @field_validator("status_code", "gross_amount", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        # Signatures are computed over the exact strings the provider sent
        if isinstance(value, (int, float)):
            return str(value)
        return value


class NotificationAck(BaseModel):
    success: bool
