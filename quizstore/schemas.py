from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Any, Optional
from datetime import datetime
from decimal import Decimal


# Schemas for User
class UserBase(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserCreate(UserBase):
    password: str


class UserUpdate(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_unsubscribed: Optional[bool] = None


# Schemas for QuizAttempt
class QuizAttemptCreate(BaseModel):
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    quiz_data: Dict[str, Any]
    expires_at: Optional[datetime] = None


# Schemas for Payment
class PaymentCreate(BaseModel):
    user_id: int
    quiz_attempt_id: Optional[int] = None
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    currency: str = "usd"
    type: str
    stripe_payment_intent_id: Optional[str] = None
    paypal_order_id: Optional[str] = None


class Payment(BaseModel):
    id: int
    user_id: int
    quiz_attempt_id: Optional[int] = None
    amount: Decimal
    currency: str
    type: str
    status: str
    stripe_payment_intent_id: Optional[str] = None
    paypal_order_id: Optional[str] = None
    version: int
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentUser(BaseModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PaymentWithUser(Payment):
    user: PaymentUser


# Schemas for Refund
class RefundCreate(BaseModel):
    payment_id: int
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    currency: str = "usd"
    reason: str
    admin_user_id: Optional[int] = None
    admin_note: Optional[str] = None


class Refund(BaseModel):
    id: int
    payment_id: int
    admin_user_id: Optional[int] = None
    amount: Decimal
    currency: str
    reason: str
    status: str
    stripe_refund_id: Optional[str] = None
    paypal_refund_id: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Admin responses
class PaymentList(BaseModel):
    payments: List[PaymentWithUser]
    limit: int
    offset: int


class RefundList(BaseModel):
    refunds: List[Refund]
    limit: int
    offset: int
