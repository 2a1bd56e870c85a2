import logging

from log_buffer import LogBuffer


def test_keeps_newest_entries_first():
    target = logging.getLogger("tests.log_buffer.capacity")
    buffer = LogBuffer(capacity=3)
    buffer.attach(target)
    try:
        for i in range(5):
            target.info("event %d", i)
    finally:
        buffer.detach()

    assert [entry["message"] for entry in buffer.entries()] == [
        "event 4",
        "event 3",
        "event 2",
    ]
    assert buffer.entries()[0]["level"] == "info"
    assert buffer.entries()[0]["logger"] == "tests.log_buffer.capacity"


def test_exceptions_are_captured_with_traceback():
    target = logging.getLogger("tests.log_buffer.exc")
    buffer = LogBuffer()
    buffer.attach(target)
    try:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            target.exception("sync_failed")
    finally:
        buffer.detach()

    entry = buffer.entries()[0]
    assert entry["level"] == "error"
    assert "RuntimeError: boom" in entry["exception"]


def test_detach_stops_collection_and_restores_level():
    target = logging.getLogger("tests.log_buffer.detach")
    target.setLevel(logging.WARNING)
    buffer = LogBuffer()
    buffer.attach(target)
    target.info("collected")
    buffer.detach()
    target.warning("ignored")

    assert [entry["message"] for entry in buffer.entries()] == ["collected"]
    assert target.level == logging.WARNING
    buffer.clear()
    assert buffer.entries() == []


def test_library_loggers_are_left_out():
    root = logging.getLogger("tests.log_buffer.libs")
    buffer = LogBuffer()
    buffer.attach(root)
    try:
        logging.getLogger("tests.log_buffer.libs.httpx").info("kept, only the prefix matches")
        root.info("kept")
    finally:
        buffer.detach()

    client_buffer = LogBuffer()
    client_buffer.attach()
    try:
        logging.getLogger("httpx").info("HTTP Request: GET http://testserver/api/logs")
        logging.getLogger("apscheduler.scheduler").info("Added job")
        logging.getLogger("services").info("plan_applied")
    finally:
        client_buffer.detach()

    assert [entry["message"] for entry in buffer.entries()] == [
        "kept",
        "kept, only the prefix matches",
    ]
    assert [entry["logger"] for entry in client_buffer.entries()] == ["services"]
