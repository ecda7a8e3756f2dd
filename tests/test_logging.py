import json
import logging

from quizstore import Client
from quizstore.database import init_db
from quizstore.logging_config import EVENT_FIELDS, JsonFormatter
from conftest import sqlite_url


async def test_query_log_lines_carry_query_fields(tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="quizstore.client")
    client = Client(datasource_url=sqlite_url(tmp_path), log=["query", "info"])
    await init_db(client.engine)
    caplog.clear()

    await client.user.count()
    await client.disconnect()

    queries = [r for r in caplog.records if "count" in (getattr(r, "query", None) or "").lower()]
    assert queries
    line = json.loads(JsonFormatter().format(queries[0]))
    assert line["logger"] == "quizstore.client"
    assert line["target"] == "quizstore.engine"
    assert line["duration_ms"] >= 0
    assert line["msg"].startswith("Query: ")

    disconnected = [r for r in caplog.records if r.getMessage() == "Disconnected"]
    line = json.loads(JsonFormatter().format(disconnected[0]))
    assert line["target"] == "quizstore.client"
    assert "query" not in line


def test_plain_records_have_no_event_fields():
    record = logging.makeLogRecord({
        "name": "quizstore.cleanup",
        "levelno": logging.INFO,
        "levelname": "INFO",
        "msg": "removed %d rows",
        "args": (3,),
    })
    line = json.loads(JsonFormatter().format(record))
    assert line["msg"] == "removed 3 rows"
    assert line["level"] == "INFO"
    assert not set(EVENT_FIELDS) & set(line)
