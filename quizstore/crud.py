import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from quizstore import schemas
from quizstore.client import Client
from quizstore.errors import NotFoundError, UniqueConstraintError
from quizstore.models import utcnow

logger = logging.getLogger("quizstore.crud")

# Retention of stored quiz data
TEMPORARY_USER_RETENTION = timedelta(days=90)
ANONYMOUS_ATTEMPT_RETENTION = timedelta(hours=24)
UNPAID_EMAIL_RETENTION = timedelta(hours=24)


# CRUD functions for User
async def get_user(client: Client, user_id: int) -> Optional[Dict[str, Any]]:
    """Returns a user by ID"""
    return await client.user.find_unique(where={"id": user_id})


async def get_user_by_email(client: Client, email: str) -> Optional[Dict[str, Any]]:
    return await client.user.find_unique(where={"email": email})


async def create_user(client: Client, user: schemas.UserCreate) -> Dict[str, Any]:
    """Creates a registered user; a taken email raises UniqueConstraintError"""
    return await client.user.create(data=user.model_dump(exclude_none=True))


async def update_user(client: Client, user_id: int, changes: schemas.UserUpdate) -> Optional[Dict[str, Any]]:
    """Updates the fields set in ``changes``; None when the user does not exist"""
    try:
        return await client.user.update(where={"id": user_id}, data=changes.model_dump(exclude_none=True))
    except NotFoundError:
        return None


async def delete_user(client: Client, user_id: int) -> Dict[str, Any]:
    return await client.user.delete(where={"id": user_id})


async def update_user_password(client: Client, user_id: int, hashed_password: str) -> Dict[str, Any]:
    return await client.user.update(where={"id": user_id}, data={"password": hashed_password})


async def is_paid_user(client: Client, user_id: int) -> bool:
    user = await client.user.find_unique(where={"id": user_id}, select={"is_paid": True})
    return bool(user and user["is_paid"])


# Temporary (guest) users
async def store_temporary_user(client: Client, session_id: str, email: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Creates a temporary user, reusing the existing one when the email is taken"""
    values = {
        "email": email,
        "password": data.get("password") or "",
        "is_temporary": True,
        "session_id": session_id,
        "expires_at": data.get("expires_at"),
        "first_name": data.get("first_name"),
        "last_name": data.get("last_name"),
    }
    if data.get("quiz_data") is not None:
        values["temp_quiz_data"] = data["quiz_data"]
    try:
        return await client.user.create(data=values)
    except UniqueConstraintError:
        user = await client.user.find_unique(where={"email": email})
        if user is None:
            raise
        logger.info("store_temporary_user: user with email %s already exists, reusing it", email)
        return user


async def get_temporary_user(client: Client, session_id: str) -> Optional[Dict[str, Any]]:
    return await client.user.find_first(
        where={"session_id": session_id, "is_temporary": True},
        order_by={"created_at": "desc"},
    )


async def get_temporary_user_by_email(client: Client, email: str) -> Optional[Dict[str, Any]]:
    return await client.user.find_first(
        where={"email": email, "is_temporary": True},
        order_by={"created_at": "desc"},
    )


async def convert_temporary_user_to_paid(client: Client, session_id: str) -> int:
    """Turns the guest of ``session_id`` into a paid user and makes its attempts permanent"""

    async def convert(tx):
        user = await tx.user.find_first(where={"session_id": session_id, "is_temporary": True})
        if user is None:
            return 0
        await tx.quiz_attempt.update_many(where={"user_id": user["id"]}, data={"expires_at": None})
        result = await tx.user.update_many(
            where={"session_id": session_id, "is_temporary": True},
            data={"is_paid": True, "is_temporary": False, "expires_at": None},
        )
        return result["count"]

    return await client.transaction(convert)


async def make_user_paid(client: Client, user_id: int) -> List[Any]:
    """Marks a user as paid and removes the expiration of all their attempts"""
    return await client.transaction([
        client.user.update(
            where={"id": user_id},
            data={"is_paid": True, "is_temporary": False, "expires_at": None},
        ),
        client.quiz_attempt.update_many(where={"user_id": user_id}, data={"expires_at": None}),
    ])


# CRUD functions for QuizAttempt
def attempt_expiration(user: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Optional[datetime]:
    """Expiration of a new attempt: never for paid users, 90 days for accounts, 24 hours for guests"""
    now = now or utcnow()
    if user is None:
        return now + ANONYMOUS_ATTEMPT_RETENTION
    if user["is_paid"]:
        return None
    return now + TEMPORARY_USER_RETENTION


async def record_quiz_attempt(client: Client, attempt: schemas.QuizAttemptCreate) -> Dict[str, Any]:
    """Stores an attempt. Without an explicit expiration it follows the owner, unknown owners get none"""
    data = attempt.model_dump(exclude_none=True)
    if attempt.expires_at is None:
        if attempt.user_id is None:
            data["expires_at"] = attempt_expiration(None)
        else:
            user = await client.user.find_unique(where={"id": attempt.user_id})
            if user is not None:
                data["expires_at"] = attempt_expiration(user)
    return await client.quiz_attempt.create(data=data)


async def get_quiz_attempt(client: Client, attempt_id: int) -> Optional[Dict[str, Any]]:
    return await client.quiz_attempt.find_unique(where={"id": attempt_id})


async def get_quiz_attempts(client: Client, user_id: int) -> List[Dict[str, Any]]:
    """Attempts of a user, newest first"""
    return await client.quiz_attempt.find_many(where={"user_id": user_id}, order_by={"completed_at": "desc"})


async def get_quiz_attempts_count(client: Client, user_id: int) -> int:
    return await client.quiz_attempt.count(where={"user_id": user_id})


async def update_quiz_attempt(client: Client, attempt_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    return await client.quiz_attempt.update(where={"id": attempt_id}, data=data)


# CRUD functions for AiContent
def content_hash(content: Any) -> str:
    payload = json.dumps(content, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


async def save_ai_content(client: Client, quiz_attempt_id: int, content_type: str, content: Any) -> Dict[str, Any]:
    """Stores generated content; one row per attempt and content type"""
    now = utcnow()
    digest = content_hash(content)
    return await client.ai_content.upsert(
        where={"quiz_attempt_id_content_type": {"quiz_attempt_id": quiz_attempt_id, "content_type": content_type}},
        create={
            "quiz_attempt_id": quiz_attempt_id,
            "content_type": content_type,
            "content": content,
            "content_hash": digest,
            "generated_at": now,
        },
        update={"content": content, "content_hash": digest, "generated_at": now},
    )


async def get_ai_content(client: Client, quiz_attempt_id: int, content_type: str) -> Optional[Dict[str, Any]]:
    return await client.ai_content.find_unique(
        where={"quiz_attempt_id_content_type": {"quiz_attempt_id": quiz_attempt_id, "content_type": content_type}}
    )


async def get_all_ai_content(client: Client, quiz_attempt_id: int) -> List[Dict[str, Any]]:
    return await client.ai_content.find_many(
        where={"quiz_attempt_id": quiz_attempt_id}, order_by={"generated_at": "desc"}
    )


async def delete_ai_content(client: Client, quiz_attempt_id: int, content_type: Optional[str] = None) -> int:
    """Deletes one content type, or every cached content of the attempt"""
    where: Dict[str, Any] = {"quiz_attempt_id": quiz_attempt_id}
    if content_type is not None:
        where["content_type"] = content_type
    result = await client.ai_content.delete_many(where=where)
    return result["count"]


# CRUD functions for Payment
async def create_payment(client: Client, payment: schemas.PaymentCreate) -> Dict[str, Any]:
    return await client.payment.create(data=payment.model_dump(exclude_none=True))


async def _transition_payment(client: Client, payment_id: int, status: str, expected_version: Optional[int], extra=None):
    if expected_version is None:
        current = await client.payment.find_unique_or_throw(where={"id": payment_id}, select={"version": True})
        expected_version = current["version"]
    data = {"status": status, "version": {"increment": 1}}
    data.update(extra or {})
    # ConflictError when another writer moved the payment past expected_version
    return await client.payment.update(where={"id": payment_id, "version": expected_version}, data=data)


async def complete_payment(client: Client, payment_id: int, expected_version: Optional[int] = None) -> Dict[str, Any]:
    return await _transition_payment(
        client, payment_id, "completed", expected_version, extra={"completed_at": utcnow()}
    )


async def fail_payment(client: Client, payment_id: int, expected_version: Optional[int] = None) -> Dict[str, Any]:
    return await _transition_payment(client, payment_id, "failed", expected_version)


async def update_payment_status_by_stripe_id(client: Client, payment_intent_id: str, status: str) -> Optional[Dict[str, Any]]:
    """Applies a gateway webhook status change; None for unknown payment intents"""
    payment = await client.payment.find_unique(where={"stripe_payment_intent_id": payment_intent_id})
    if payment is None:
        logger.warning("Webhook for unknown payment intent %s", payment_intent_id)
        return None
    extra = {"completed_at": utcnow()} if status == "completed" else None
    return await _transition_payment(client, payment["id"], status, payment["version"], extra=extra)


async def link_payment_to_quiz_attempt(client: Client, payment_id: int, quiz_attempt_id: int) -> Dict[str, Any]:
    return await client.payment.update(where={"id": payment_id}, data={"quiz_attempt_id": quiz_attempt_id})


async def get_payment(client: Client, payment_id: int) -> Optional[Dict[str, Any]]:
    return await client.payment.find_unique(where={"id": payment_id})


async def get_payment_by_stripe_id(client: Client, payment_intent_id: str) -> Optional[Dict[str, Any]]:
    return await client.payment.find_unique(where={"stripe_payment_intent_id": payment_intent_id})


async def get_payments_by_user(client: Client, user_id: int) -> List[Dict[str, Any]]:
    return await client.payment.find_many(where={"user_id": user_id}, order_by={"created_at": "desc"})


async def get_payments_with_users(
    client: Client, limit: int = 100, offset: int = 0, status: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Payments for the admin listing, newest first, with their user"""
    return await client.payment.find_many(
        where={"status": status} if status else None,
        order_by=[{"created_at": "desc"}, {"id": "desc"}],
        take=limit,
        skip=offset,
        include={"user": {"select": {"id": True, "email": True, "first_name": True, "last_name": True}}},
    )


# CRUD functions for Refund
async def create_refund(client: Client, refund: schemas.RefundCreate) -> Dict[str, Any]:
    return await client.refund.create(data=refund.model_dump(exclude_none=True))


async def update_refund_status(
    client: Client,
    refund_id: int,
    status: str,
    processed_at: Optional[datetime] = None,
    stripe_refund_id: Optional[str] = None,
    paypal_refund_id: Optional[str] = None,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {"status": status}
    if processed_at is not None:
        data["processed_at"] = processed_at
    if stripe_refund_id is not None:
        data["stripe_refund_id"] = stripe_refund_id
    if paypal_refund_id is not None:
        data["paypal_refund_id"] = paypal_refund_id
    return await client.refund.update(where={"id": refund_id}, data=data)


async def get_refund(client: Client, refund_id: int) -> Optional[Dict[str, Any]]:
    return await client.refund.find_unique(where={"id": refund_id})


async def get_refunds_by_payment(client: Client, payment_id: int) -> List[Dict[str, Any]]:
    return await client.refund.find_many(where={"payment_id": payment_id}, order_by={"created_at": "desc"})


async def get_refunds(client: Client, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
    return await client.refund.find_many(
        order_by=[{"created_at": "desc"}, {"id": "desc"}], take=limit, skip=offset
    )


# Report views
async def record_report_view(
    client: Client, quiz_attempt_id: int, user_id: Optional[int] = None, session_id: Optional[str] = None
) -> Dict[str, Any]:
    return await client.report_view.create(data={
        "quiz_attempt_id": quiz_attempt_id,
        "user_id": user_id,
        "session_id": session_id,
    })


async def unlock_first_report(client: Client, user_id: int) -> bool:
    """Grants the free first report once; False when it was already used"""
    result = await client.user.update_many(
        where={"id": user_id, "has_unlocked_first_report": False},
        data={"has_unlocked_first_report": True},
    )
    return result["count"] == 1


async def can_view_report(client: Client, user_id: int, quiz_attempt_id: int) -> bool:
    """Reports already viewed, paid users, paid attempts and a user's first unlocked report are viewable"""
    user = await client.user.find_unique(where={"id": user_id})
    if user is None:
        return False
    viewed = await client.report_view.count(where={"user_id": user_id, "quiz_attempt_id": quiz_attempt_id})
    if viewed or user["is_paid"]:
        return True
    paid = await client.payment.count(
        where={"user_id": user_id, "quiz_attempt_id": quiz_attempt_id, "status": "completed"}
    )
    if paid:
        return True
    return await unlock_first_report(client, user_id)


# Unpaid user emails
async def store_unpaid_user_email(client: Client, session_id: str, email: str, quiz_data: Any) -> Dict[str, Any]:
    expires_at = utcnow() + UNPAID_EMAIL_RETENTION
    return await client.unpaid_user_email.upsert(
        where={"session_id": session_id},
        create={"session_id": session_id, "email": email, "quiz_data": quiz_data, "expires_at": expires_at},
        update={"email": email, "quiz_data": quiz_data, "expires_at": expires_at},
    )


async def get_unpaid_user_email(client: Client, session_id: str) -> Optional[Dict[str, Any]]:
    return await client.unpaid_user_email.find_unique(
        where={"session_id": session_id, "expires_at": {"gt": utcnow()}}
    )


# Password reset tokens
async def create_password_reset_token(client: Client, user_id: int, token: str, expires_at: datetime) -> Dict[str, Any]:
    return await client.password_reset_token.create(
        data={"user_id": user_id, "token": token, "expires_at": expires_at}
    )


async def get_password_reset_token(client: Client, token: str) -> Optional[Dict[str, Any]]:
    """Returns the token while it is still valid"""
    return await client.password_reset_token.find_unique(
        where={"token": token, "expires_at": {"gt": utcnow()}}
    )


async def delete_password_reset_token(client: Client, token: str) -> Dict[str, Any]:
    return await client.password_reset_token.delete(where={"token": token})
