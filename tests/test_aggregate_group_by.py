from decimal import Decimal

from conftest import make_payment, make_user


async def _seed(client):
    ana = await make_user(client, email="ana@example.com")
    bob = await make_user(client, email="bob@example.com")
    await make_payment(client, ana["id"], amount="10.00", status="completed")
    await make_payment(client, ana["id"], amount="30.00", status="completed")
    await make_payment(client, bob["id"], amount="20.00")
    return ana, bob


async def test_aggregate(client):
    await _seed(client)
    result = await client.payment.aggregate(
        _count=True,
        _sum={"amount": True},
        _min={"amount": True},
        _max={"amount": True, "created_at": True},
        _avg={"amount": True, "version": True},
    )
    assert result["_count"] == 3
    assert result["_sum"]["amount"] == Decimal("60.00")
    assert isinstance(result["_sum"]["amount"], Decimal)
    assert result["_min"]["amount"] == Decimal("10.00")
    assert result["_max"]["amount"] == Decimal("30.00")
    assert result["_max"]["created_at"] is not None
    assert result["_avg"]["amount"] == Decimal("20.00")
    assert result["_avg"]["version"] == 0.0


async def test_aggregate_with_filters_and_window(client):
    await _seed(client)
    completed = await client.payment.aggregate(where={"status": "completed"}, _sum={"amount": True})
    assert completed["_sum"]["amount"] == Decimal("40.00")

    first_two = await client.payment.aggregate(order_by={"id": "asc"}, take=2, _sum={"amount": True})
    assert first_two["_sum"]["amount"] == Decimal("40.00")


async def test_aggregate_of_no_rows(client):
    result = await client.payment.aggregate(_count=True, _sum={"amount": True})
    assert result == {"_count": 0, "_sum": {"amount": None}}


async def test_count(client):
    await _seed(client)
    assert await client.payment.count() == 3
    assert await client.payment.count(where={"status": "pending"}) == 1
    assert await client.payment.count(take=2) == 2
    counts = await client.payment.count(select={"_all": True, "quiz_attempt_id": True})
    assert counts == {"_all": 3, "quiz_attempt_id": 0}


async def test_group_by(client):
    ana, bob = await _seed(client)
    groups = await client.payment.group_by(
        by=["user_id"],
        _count=True,
        _sum={"amount": True},
        order_by={"user_id": "asc"},
    )
    assert groups == [
        {"user_id": ana["id"], "_count": 2, "_sum": {"amount": Decimal("40.00")}},
        {"user_id": bob["id"], "_count": 1, "_sum": {"amount": Decimal("20.00")}},
    ]


async def test_group_by_having_and_aggregate_order(client):
    ana, bob = await _seed(client)
    rich = await client.payment.group_by(by=["user_id"], having={"amount": {"_sum": {"gt": 35}}})
    assert rich == [{"user_id": ana["id"]}]

    top = await client.payment.group_by(
        by=["user_id", "status"],
        _max={"amount": True},
        order_by={"_max": {"amount": "desc"}},
        take=1,
    )
    assert top == [{"user_id": ana["id"], "status": "completed", "_max": {"amount": Decimal("30.00")}}]

    grouped = await client.payment.group_by(by=["status"], where={"user_id": bob["id"]}, _count={"_all": True})
    assert grouped == [{"status": "pending", "_count": {"_all": 1}}]
