from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from course_payments.models import PaymentStatus


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    course_id: UUID = Field(..., alias="courseId")
    user_id: UUID = Field(..., alias="userId")
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, examples=["2500.00"])
    title: str = Field(..., min_length=1, max_length=200)
    currency: str = Field("LKR", min_length=3, max_length=3, examples=["LKR"])

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class CheckoutResponse(BaseModel):
    success: bool = True
    digest: str
    merchant_id: str = Field(..., serialization_alias="merchantId")
    order_id: str = Field(..., serialization_alias="orderId")
    amount: str
    currency: str


class NotificationPayload(BaseModel):
    """Gateway callback body. Accepts our field names and PayHere's native ones."""

    order_id: str = Field(..., min_length=1, validation_alias=AliasChoices("orderId", "order_id"))
    amount: str = Field(..., min_length=1, validation_alias=AliasChoices("amount", "payhere_amount"))
    currency: str = Field(..., min_length=1, validation_alias=AliasChoices("currency", "payhere_currency"))
    status_code: str = Field(..., min_length=1, validation_alias=AliasChoices("statusCode", "status_code"))
    signature: str = Field(..., min_length=1, validation_alias=AliasChoices("signature", "md5sig"))
    gateway_payment_id: Optional[str] = Field(None, validation_alias=AliasChoices("gatewayPaymentId", "payment_id"))
    method: Optional[str] = None
    status_message: Optional[str] = Field(None, validation_alias=AliasChoices("statusMessage", "status_message"))

    @field_validator("status_code", mode="before")
    @classmethod
    def coerce_status_code(cls, v):
        # JSON senders may post the code as a number
        return str(v) if isinstance(v, int) else v

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v):
        return str(v) if isinstance(v, (int, float, Decimal)) else v


class NotificationResponse(BaseModel):
    status: str
    outcome: str
    message: str


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    course_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    method: str
    gateway_payment_id: Optional[str] = None
    access_granted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
