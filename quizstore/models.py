from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Numeric, JSON, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from quizstore.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Money(TypeDecorator):
    """Two-decimal amount, always loaded as ``decimal.Decimal``.

    NUMERIC(10, 2) on PostgreSQL. SQLite has no exact decimal type, so there
    the value is stored as integer cents.
    """

    impl = Numeric
    cache_ok = True

    CENT = Decimal("0.01")

    def __init__(self):
        super().__init__(10, 2, asdecimal=True)

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(Integer())
        return dialect.type_descriptor(Numeric(10, 2, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        value = value.quantize(self.CENT, rounding=ROUND_HALF_UP)
        if dialect.name == "sqlite":
            return int(value.scaleb(2))
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            # AVG over cents comes back as a float
            cents = Decimal(value) if isinstance(value, int) else Decimal(repr(value))
            return cents.scaleb(-2)
        return value if isinstance(value, Decimal) else Decimal(str(value))


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    is_unsubscribed = Column(Boolean, nullable=False, default=False)
    is_paid = Column(Boolean, nullable=False, default=False)
    is_temporary = Column(Boolean, nullable=False, default=False)
    has_unlocked_first_report = Column(Boolean, nullable=False, default=False)
    session_id = Column(String(255), nullable=True)
    temp_quiz_data = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    password_reset_tokens = relationship("PasswordResetToken", back_populates="user")
    payments = relationship("Payment", back_populates="user")
    quiz_attempts = relationship("QuizAttempt", back_populates="user")
    refunds = relationship("Refund", back_populates="admin_user")
    report_views = relationship("ReportView", back_populates="user")


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    session_id = Column(String(255), nullable=True)  # anonymous attempts
    quiz_data = Column(JSON, nullable=False)
    ai_content = Column(JSON, nullable=True)  # legacy inline cache, see AiContent
    is_paid = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="quiz_attempts")
    ai_contents = relationship("AiContent", back_populates="quiz_attempt")
    payments = relationship("Payment", back_populates="quiz_attempt")
    report_views = relationship("ReportView", back_populates="quiz_attempt")


class AiContent(Base):
    __tablename__ = "ai_content"
    __table_args__ = (UniqueConstraint("quiz_attempt_id", "content_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    quiz_attempt_id = Column(Integer, ForeignKey("quiz_attempts.id", ondelete="CASCADE"), nullable=False)
    content_type = Column(String(100), nullable=False)
    content = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=True)
    generated_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    quiz_attempt = relationship("QuizAttempt", back_populates="ai_contents")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    quiz_attempt_id = Column(Integer, ForeignKey("quiz_attempts.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Money(), nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    type = Column(String(50), nullable=False)  # access_pass, report_unlock, ...
    status = Column(String(50), nullable=False, default="pending")  # pending, completed, failed, refunded
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    paypal_order_id = Column(String(255), unique=True, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="payments")
    quiz_attempt = relationship("QuizAttempt", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment")


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False)
    admin_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Money(), nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    reason = Column(Text, nullable=False)
    status = Column(String(50), nullable=False, default="pending")  # pending, succeeded, failed
    stripe_refund_id = Column(String(255), unique=True, nullable=True)
    paypal_refund_id = Column(String(255), unique=True, nullable=True)
    admin_note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    # Relationships
    payment = relationship("Payment", back_populates="refunds")
    admin_user = relationship("User", back_populates="refunds")


class UnpaidUserEmail(Base):
    __tablename__ = "unpaid_user_emails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), nullable=False)
    quiz_data = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class ReportView(Base):
    __tablename__ = "report_views"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quiz_attempt_id = Column(Integer, ForeignKey("quiz_attempts.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    session_id = Column(String(255), nullable=True)
    viewed_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    quiz_attempt = relationship("QuizAttempt", back_populates="report_views")
    user = relationship("User", back_populates="report_views")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(255), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    user = relationship("User", back_populates="password_reset_tokens")
