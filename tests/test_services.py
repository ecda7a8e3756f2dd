from datetime import timedelta
from decimal import Decimal

import pytest

from quizstore import ConflictError, ForeignKeyConstraintError, cleanup, crud, schemas
from quizstore.models import utcnow
from conftest import make_payment, make_user


async def test_user_crud(client):
    user = await crud.create_user(client, schemas.UserCreate(email="ana@example.com", password="hashed"))
    assert (await crud.get_user_by_email(client, "ana@example.com"))["id"] == user["id"]

    updated = await crud.update_user(client, user["id"], schemas.UserUpdate(first_name="Ana"))
    assert updated["first_name"] == "Ana"
    assert updated["email"] == "ana@example.com"
    assert await crud.update_user(client, 404, schemas.UserUpdate(first_name="x")) is None

    assert not await crud.is_paid_user(client, user["id"])
    await crud.make_user_paid(client, user["id"])
    assert await crud.is_paid_user(client, user["id"])


async def test_temporary_user_lifecycle(client):
    guest = await crud.store_temporary_user(
        client, "sess-1", "guest@example.com", {"quiz_data": {"answers": [1, 2]}}
    )
    assert guest["is_temporary"]
    assert guest["temp_quiz_data"] == {"answers": [1, 2]}
    assert guest["expires_at"] is None

    again = await crud.store_temporary_user(client, "sess-2", "guest@example.com", {})
    assert again["id"] == guest["id"]

    attempt = await crud.record_quiz_attempt(
        client, schemas.QuizAttemptCreate(user_id=guest["id"], quiz_data={"answers": [1, 2]})
    )
    assert attempt["expires_at"] is not None

    assert (await crud.get_temporary_user(client, "sess-1"))["id"] == guest["id"]
    assert await crud.convert_temporary_user_to_paid(client, "sess-1") == 1
    assert await crud.get_temporary_user(client, "sess-1") is None
    assert await crud.convert_temporary_user_to_paid(client, "sess-1") == 0

    user = await crud.get_user(client, guest["id"])
    assert user["is_paid"] and not user["is_temporary"]
    assert (await crud.get_quiz_attempt(client, attempt["id"]))["expires_at"] is None


def test_attempt_expiration():
    now = utcnow()
    assert crud.attempt_expiration(None, now) == now + timedelta(hours=24)
    assert crud.attempt_expiration({"is_paid": False}, now) == now + timedelta(days=90)
    assert crud.attempt_expiration({"is_paid": True}, now) is None


async def test_record_attempt_for_unknown_user(client):
    with pytest.raises(ForeignKeyConstraintError):
        await crud.record_quiz_attempt(client, schemas.QuizAttemptCreate(user_id=404, quiz_data={}))
    assert await client.quiz_attempt.count() == 0


async def test_ai_content_is_upserted(client):
    attempt = await crud.record_quiz_attempt(client, schemas.QuizAttemptCreate(quiz_data={}))
    first = await crud.save_ai_content(client, attempt["id"], "report", {"text": "v1"})
    second = await crud.save_ai_content(client, attempt["id"], "report", {"text": "v2"})
    assert first["id"] == second["id"]
    assert second["content_hash"] == crud.content_hash({"text": "v2"})
    assert len(second["content_hash"]) == 64

    await crud.save_ai_content(client, attempt["id"], "summary", {"text": "s"})
    assert len(await crud.get_all_ai_content(client, attempt["id"])) == 2
    assert (await crud.get_ai_content(client, attempt["id"], "report"))["content"] == {"text": "v2"}
    assert await crud.delete_ai_content(client, attempt["id"], "summary") == 1
    assert await crud.delete_ai_content(client, attempt["id"]) == 1


async def test_payment_transitions(client):
    user = await make_user(client)
    payment = await crud.create_payment(client, schemas.PaymentCreate(
        user_id=user["id"], amount=Decimal("9.99"), type="access_pass", stripe_payment_intent_id="pi_1",
    ))
    completed = await crud.complete_payment(client, payment["id"], expected_version=0)
    assert completed["status"] == "completed"
    assert completed["version"] == 1
    assert completed["completed_at"] is not None

    with pytest.raises(ConflictError):
        await crud.fail_payment(client, payment["id"], expected_version=0)

    refunded = await crud.update_payment_status_by_stripe_id(client, "pi_1", "refunded")
    assert refunded["version"] == 2
    assert await crud.update_payment_status_by_stripe_id(client, "pi_unknown", "completed") is None


async def test_refunds(client):
    user = await make_user(client)
    payment = await make_payment(client, user["id"])
    refund = await crud.create_refund(client, schemas.RefundCreate(
        payment_id=payment["id"], amount=Decimal("9.99"), reason="requested by customer",
    ))
    processed = await crud.update_refund_status(
        client, refund["id"], "succeeded", processed_at=utcnow(), stripe_refund_id="re_1"
    )
    assert processed["status"] == "succeeded"
    assert processed["stripe_refund_id"] == "re_1"
    assert [r["id"] for r in await crud.get_refunds_by_payment(client, payment["id"])] == [refund["id"]]


async def test_report_access(client):
    user = await make_user(client)
    first = await crud.record_quiz_attempt(client, schemas.QuizAttemptCreate(user_id=user["id"], quiz_data={}))
    second = await crud.record_quiz_attempt(client, schemas.QuizAttemptCreate(user_id=user["id"], quiz_data={}))

    # The first report is free, once
    assert await crud.can_view_report(client, user["id"], first["id"])
    assert not await crud.can_view_report(client, user["id"], second["id"])

    # Once viewed, the free report stays open
    await crud.record_report_view(client, first["id"], user_id=user["id"])
    assert await crud.can_view_report(client, user["id"], first["id"])
    assert await crud.can_view_report(client, user["id"], first["id"])
    assert not await crud.can_view_report(client, user["id"], second["id"])

    await make_payment(client, user["id"], quiz_attempt_id=second["id"], status="completed")
    assert await crud.can_view_report(client, user["id"], second["id"])
    view = await crud.record_report_view(client, second["id"], user_id=user["id"])
    assert view["quiz_attempt_id"] == second["id"]


async def test_unpaid_emails_and_reset_tokens(client):
    stored = await crud.store_unpaid_user_email(client, "sess-1", "a@example.com", {"q": 1})
    again = await crud.store_unpaid_user_email(client, "sess-1", "b@example.com", {"q": 2})
    assert stored["id"] == again["id"]
    assert (await crud.get_unpaid_user_email(client, "sess-1"))["email"] == "b@example.com"

    user = await make_user(client)
    await crud.create_password_reset_token(client, user["id"], "tok-valid", utcnow() + timedelta(hours=1))
    await crud.create_password_reset_token(client, user["id"], "tok-old", utcnow() - timedelta(hours=1))
    assert (await crud.get_password_reset_token(client, "tok-valid"))["user_id"] == user["id"]
    assert await crud.get_password_reset_token(client, "tok-old") is None
    await crud.delete_password_reset_token(client, "tok-valid")
    assert await crud.get_password_reset_token(client, "tok-valid") is None


async def test_cleanup(client):
    past = utcnow() - timedelta(days=1)
    expired_guest = await crud.store_temporary_user(client, "s1", "old@example.com", {"expires_at": past})
    paying_guest = await crud.store_temporary_user(client, "s2", "paying@example.com", {"expires_at": past})
    await make_payment(client, paying_guest["id"])
    fresh_guest = await crud.store_temporary_user(client, "s3", "new@example.com", {})

    await client.quiz_attempt.create(data={"quiz_data": {}, "expires_at": past})
    kept = await client.quiz_attempt.create(data={"quiz_data": {}})
    await client.unpaid_user_email.create(data={
        "session_id": "s1", "email": "old@example.com", "quiz_data": {}, "expires_at": past,
    })
    await crud.create_password_reset_token(client, fresh_guest["id"], "tok-old", past)

    counts = await cleanup.run_cleanup(client)
    assert counts == {
        "temporary_users": 1,
        "quiz_attempts": 1,
        "unpaid_user_emails": 1,
        "password_reset_tokens": 1,
    }
    assert await crud.get_user(client, expired_guest["id"]) is None
    assert await crud.get_user(client, paying_guest["id"]) is not None
    assert await crud.get_user(client, fresh_guest["id"]) is not None
    assert await crud.get_quiz_attempt(client, kept["id"]) is not None
