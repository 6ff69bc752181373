from decimal import Decimal

from pydantic import BaseModel, Field


class CheckInBody(BaseModel):
    staff_id: int = Field(gt=0)


class BookingStatusBody(BaseModel):
    staff_id: int = Field(gt=0)
    status: str


class CancelBookingBody(BaseModel):
    customer_id: int = Field(gt=0)
    reason: str | None = None


class PayoutBody(BaseModel):
    recipient_id: int = Field(gt=0)
    amount: Decimal


class TipBody(BaseModel):
    staff_id: int = Field(gt=0)
    amount: Decimal
    booking_id: int | None = Field(default=None, gt=0)


class TopUpBody(BaseModel):
    amount: Decimal
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class BookingResponse(BaseModel):
    id: int
    reference: str
    customer_id: int
    merchant_id: int
    assigned_staff_id: int | None = None
    guest_count: int
    status: str
    checked_in_at: str | None = None
    cancelled_at: str | None = None
    cancellation_reason: str | None = None


class WalletResponse(BaseModel):
    id: str
    user_id: int
    balance: str
    currency: str


class AuditLogResponse(BaseModel):
    id: str
    user_id: int
    role: str
    action: str
    details: dict
    ip_address: str | None = None
    created_at: str


class NotificationResponse(BaseModel):
    id: str
    notification_type: str
    message_key: str
    message: str
    language_code: str
    module: str
    is_read: bool
    created_at: str


class PointsSummaryResponse(BaseModel):
    user_id: int
    active_points: int
    earned_today: int
    daily_limit: int
