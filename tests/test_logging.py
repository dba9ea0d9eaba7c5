import json
import logging

from main import formatter
from services.notices import CollectingNoticeSink, Notice, log_notice


def find_request_log(caplog, path):
    for record in caplog.records:
        if record.name == "main" and record.getMessage() == "Request processed" and getattr(record, "path", None) == path:
            return record
    return None


def test_request_log_carries_request_id(client, caplog):
    caplog.set_level(logging.INFO)
    response = client.get("/api/health/live")

    record = find_request_log(caplog, "/api/health/live")
    assert record is not None, caplog.text
    assert record.request_id == response.headers["X-Request-ID"]
    assert record.status_code == 200
    assert record.method == "GET"
    assert record.user_id == "anonymous"


def test_request_log_carries_user_id(client, caplog, auth_headers, test_user):
    caplog.set_level(logging.INFO)
    client.get("/api/processing/presets", headers=auth_headers)

    record = find_request_log(caplog, "/api/processing/presets")
    assert record is not None, caplog.text
    assert record.user_id == str(test_user.id)


def test_records_outside_requests_have_defaults(caplog):
    caplog.set_level(logging.INFO)
    logging.getLogger("services.test").info("background work")
    record = caplog.records[-1]
    assert record.request_id == "N/A"
    assert record.user_id is None


def test_json_formatter_output(caplog):
    caplog.set_level(logging.INFO)
    logging.getLogger("services.test").info("formatted", extra={"path": "/x"})
    payload = json.loads(formatter.format(caplog.records[-1]))
    assert payload["message"] == "formatted"
    assert payload["levelname"] == "INFO"
    assert payload["request_id"] == "N/A"
    assert payload["path"] == "/x"


def test_notices_are_logged_as_warnings(caplog):
    caplog.set_level(logging.WARNING)
    log_notice(Notice(kind="watermark_skipped", message="Watermark could not be applied", detail={"user_id": "abc"}))

    record = caplog.records[-1]
    assert record.levelname == "WARNING"
    assert record.notice_kind == "watermark_skipped"
    assert record.notice_detail == {"user_id": "abc"}


def test_collecting_sink_keeps_and_forwards():
    forwarded = []
    sink = CollectingNoticeSink(forward=forwarded.append)
    notice = Notice(kind="orphaned_blob", message="left behind")
    sink(notice)
    assert sink.notices == [notice]
    assert forwarded == [notice]
