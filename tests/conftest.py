from decimal import Decimal

import pytest

from quizstore import Client
from quizstore.database import init_db


def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def client(tmp_path):
    db = Client(datasource_url=sqlite_url(tmp_path))
    await init_db(db.engine)
    await db.connect()
    yield db
    await db.disconnect()


async def make_user(client, email="ana@example.com", **extra):
    return await client.user.create(data={"email": email, "password": "hashed", **extra})


async def make_payment(client, user_id, amount="9.99", **extra):
    data = {"user_id": user_id, "amount": Decimal(amount), "type": "access_pass"}
    data.update(extra)
    return await client.payment.create(data=data)
