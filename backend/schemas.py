from pydantic import BaseModel, Field, field_serializer, field_validator
from decimal import Decimal
from datetime import datetime
from typing import Optional

from ledger import MAX_AMOUNT, MAX_IDEMPOTENCY_KEY_LENGTH


class ExpenseCreate(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, max_length=MAX_IDEMPOTENCY_KEY_LENGTH)
    amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT, description="Major units (e.g. rupees); must be non-negative")
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default="", max_length=1000)
    date: str = Field(..., min_length=1, max_length=10, description="YYYY-MM-DD")

    # Runs before the length checks so padded input is measured after trimming.
    @field_validator("category", "date", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, v):
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("amount", mode="before")
    @classmethod
    def amount_must_be_numeric(cls, v):
        if v is None or isinstance(v, bool):
            raise ValueError("Amount must be a number")
        return v


class ExpenseResponse(BaseModel):
    id: str
    amount: Decimal
    category: str
    description: str
    date: str
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_serializer("amount")
    def amount_as_number(self, amount: Decimal) -> float:
        return float(amount)

    @field_serializer("created_at")
    def created_at_iso(self, created_at: datetime) -> str:
        return created_at.isoformat().replace("+00:00", "Z")


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[list] = None
