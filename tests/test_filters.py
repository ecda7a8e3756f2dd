from decimal import Decimal

import pytest

from quizstore import Client, DbNull, JsonNull, ValidationError
from quizstore.filters import (
    And, JsonCondition, Not, Or, RelationCondition, ScalarCondition, build_order_by, build_where,
    build_where_unique,
)
from quizstore.schema import REGISTRY

User = REGISTRY.model("User")
Payment = REGISTRY.model("Payment")
QuizAttempt = REGISTRY.model("QuizAttempt")


def _offline_client():
    # No query is sent: every call below fails while the operation is built
    return Client(datasource_url="sqlite+aiosqlite:///:memory:", error_format="minimal")


def test_where_shorthand_and_operators():
    assert build_where(User, {"email": "a@x.com"}) == ScalarCondition("email", "equals", "a@x.com")
    predicate = build_where(User, {"email": {"contains": "x", "mode": "insensitive"}})
    assert predicate == ScalarCondition("email", "contains", "x", insensitive=True)
    assert build_where(Payment, {"amount": {"gte": "10.50"}}) == ScalarCondition("amount", "gte", Decimal("10.50"))


def test_logical_operators_accept_dict_or_list():
    predicate = build_where(User, {"OR": [{"email": "a@x.com"}, {"is_paid": True}], "NOT": {"is_temporary": True}})
    assert isinstance(predicate, And)
    assert predicate.children[0] == Or((
        ScalarCondition("email", "equals", "a@x.com"),
        ScalarCondition("is_paid", "equals", True),
    ))
    assert predicate.children[1] == Not(And((ScalarCondition("is_temporary", "equals", True),)))


def test_not_with_nested_operators():
    predicate = build_where(User, {"first_name": {"not": {"in": ["Ana", "Luis"]}}})
    assert predicate == Not(ScalarCondition("first_name", "in", ["Ana", "Luis"]))


def test_relation_filters():
    assert build_where(QuizAttempt, {"user": None}) == RelationCondition("user", "is", None, is_null_check=True)
    shorthand = build_where(QuizAttempt, {"user": {"is_paid": True}})
    assert shorthand == RelationCondition("user", "is", ScalarCondition("is_paid", "equals", True))
    some = build_where(User, {"payments": {"some": {"status": "completed"}}})
    assert some == RelationCondition("payments", "some", ScalarCondition("status", "equals", "completed"))


def test_json_filters():
    predicate = build_where(QuizAttempt, {"quiz_data": {"path": ["answers"], "array_contains": [3]}})
    assert predicate == JsonCondition("quiz_data", "array_contains", [3], ("answers",))
    assert build_where(QuizAttempt, {"ai_content": DbNull}) == JsonCondition("ai_content", "equals", DbNull)


@pytest.mark.parametrize("where", [
    {"nope": 1},
    {"email": {"lt": 3}},
    {"is_paid": {"gt": True}},
    {"email": {"mode": "loud", "contains": "a"}},
    {"payments": {"is": {}}},
    {"created_at": "not a date"},
])
def test_invalid_where_is_rejected(where):
    with pytest.raises(ValidationError):
        build_where(User, where)


def test_json_filter_rejects_plain_none():
    with pytest.raises(ValidationError):
        build_where(QuizAttempt, {"ai_content": None})


def test_where_unique_requires_a_unique_key():
    predicate, values = build_where_unique(Payment, {"id": 1, "version": 0})
    assert values == {"id": 1}
    assert predicate == And((ScalarCondition("id", "equals", 1), ScalarCondition("version", "equals", 0)))

    with pytest.raises(ValidationError):
        build_where_unique(Payment, {"status": "pending"})
    with pytest.raises(ValidationError):
        build_where_unique(REGISTRY.model("AiContent"), {"quiz_attempt_id_content_type": {"quiz_attempt_id": 1}})


def test_order_by_forms():
    items = build_order_by(Payment, [{"created_at": "desc"}, {"completed_at": {"sort": "asc", "nulls": "last"}}])
    assert [(i.field, i.descending, i.nulls) for i in items] == [
        ("created_at", True, None),
        ("completed_at", False, "last"),
    ]
    with pytest.raises(ValidationError):
        build_order_by(Payment, {"amount": "sideways"})
    with pytest.raises(ValidationError):
        build_order_by(QuizAttempt, {"quiz_data": "asc"})


def test_invalid_arguments_fail_before_any_query():
    client = _offline_client()
    with pytest.raises(ValidationError):
        client.user.find_many(where={"unknown_field": 1})
    with pytest.raises(ValidationError):
        client.user.find_unique(where={"first_name": "Ana"})
    with pytest.raises(ValidationError):
        client.user.find_many(select={"email": True}, include={"payments": True})
    with pytest.raises(ValidationError):
        client.user.find_many(select={"email": True}, omit={"password": True})
    with pytest.raises(ValidationError):
        client.user.find_many(include={"email": True})
    with pytest.raises(ValidationError):
        client.user.find_many(take="ten")
    with pytest.raises(ValidationError):
        client.payment.aggregate(_sum={"status": True})


def test_create_payload_validation():
    client = _offline_client()
    with pytest.raises(ValidationError) as exc:
        client.user.create(data={"email": "a@x.com"})
    assert "password" in exc.value.message
    with pytest.raises(ValidationError):
        client.user.create(data={"email": "a@x.com", "password": "x", "nickname": "ana"})
    with pytest.raises(ValidationError):
        client.quiz_attempt.create(data={"quiz_data": None})
    with pytest.raises(ValidationError):
        client.payment.create(data={
            "amount": Decimal("1.00"),
            "type": "access_pass",
            "user_id": 1,
            "user": {"connect": {"id": 1}},
        })
    with pytest.raises(ValidationError):
        client.payment.create(data={
            "amount": Decimal("1.00"),
            "type": "access_pass",
            "user": {"connect": {"id": 1}, "create": {"email": "b@x.com", "password": "x"}},
        })
    with pytest.raises(ValidationError):
        client.payment.create_many(data=[{"amount": 1, "type": "x", "user": {"connect": {"id": 1}}}])


def test_update_payload_validation():
    client = _offline_client()
    with pytest.raises(ValidationError):
        client.user.update(where={"id": 1}, data={"email": {"increment": 1}})
    with pytest.raises(ValidationError):
        client.payment.update(where={"id": 1}, data={"amount": {"divide": 0}})
    with pytest.raises(ValidationError):
        client.payment.update(where={"id": 1}, data={"user": {"disconnect": True}})
    with pytest.raises(ValidationError):
        client.quiz_attempt.update(where={"id": 1}, data={"ai_content": None})
    # JsonNull and DbNull are the way to clear a Json field
    client.quiz_attempt.update(where={"id": 1}, data={"ai_content": JsonNull})
    client.quiz_attempt.update(where={"id": 1}, data={"ai_content": DbNull})


def test_group_by_validation():
    client = _offline_client()
    with pytest.raises(ValidationError):
        client.payment.group_by(by=[])
    with pytest.raises(ValidationError):
        client.payment.group_by(by=["user_id"], order_by={"status": "asc"})
    with pytest.raises(ValidationError):
        client.payment.group_by(by=["user_id"], having={"status": "completed"})
    with pytest.raises(ValidationError):
        client.payment.group_by(by=["user_id"], take=5)
    with pytest.raises(ValidationError):
        client.payment.group_by(by=["user_id"], order_by={"user_id": "asc"}, take=-1)
    client.payment.group_by(
        by=["user_id"],
        having={"amount": {"_sum": {"gt": 10}}},
        order_by={"_sum": {"amount": "desc"}},
        take=5,
    )


def test_error_format_renders_invocation():
    client = Client(datasource_url="sqlite+aiosqlite:///:memory:", error_format="colorless")
    with pytest.raises(ValidationError) as exc:
        client.user.find_many(where={"nope": 1})
    assert str(exc.value).startswith("Invalid `client.user.find_many()` invocation:")
    assert exc.value.kind == "validation"
