from quizstore.schema import REGISTRY, ScalarType


def test_delegates_cover_every_model():
    assert sorted(REGISTRY.delegates) == [
        "ai_content",
        "password_reset_token",
        "payment",
        "quiz_attempt",
        "refund",
        "report_view",
        "unpaid_user_email",
        "user",
    ]


def test_field_metadata():
    payment = REGISTRY.model("Payment")
    assert payment.id_field == "id"
    assert payment.fields["amount"].type == ScalarType.DECIMAL
    assert payment.fields["quiz_attempt_id"].nullable
    assert not payment.fields["type"].nullable
    assert payment.fields["version"].has_default
    assert not payment.fields["version"].is_required
    assert payment.fields["type"].is_required
    assert REGISTRY.model("User").fields["updated_at"].is_updated_at
    assert REGISTRY.model("QuizAttempt").fields["quiz_data"].type == ScalarType.JSON


def test_unique_keys():
    payment = REGISTRY.model("Payment")
    names = {key.name for key in payment.unique_keys}
    assert names == {"id", "stripe_payment_intent_id", "paypal_order_id"}

    compound = REGISTRY.model("AiContent").unique_key("quiz_attempt_id_content_type")
    assert compound is not None
    assert compound.is_compound
    assert compound.fields == ("quiz_attempt_id", "content_type")


def test_relations():
    user = REGISTRY.model("User")
    assert user.relations["payments"].to_many
    assert user.relations["payments"].target == "Payment"
    assert user.relations["refunds"].references == ("admin_user_id",)

    attempt = REGISTRY.model("QuizAttempt")
    assert not attempt.relations["user"].to_many
    assert attempt.relations["user"].nullable
    assert attempt.relations["user"].fields == ("user_id",)
    assert attempt.foreign_keys == {"user_id": "user"}

    payment = REGISTRY.model("Payment")
    assert not payment.relations["user"].nullable
