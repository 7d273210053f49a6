import json
import logging

from espazza.infra.logs import JsonFormatter, RequestContextFilter


def test_json_formatter_includes_extras():
    record = logging.LogRecord("espazza.reconciliation", logging.ERROR,
                               __file__, 1, "payment captured", (), None)
    record.purchase_id = "p1"
    RequestContextFilter().filter(record)

    doc = json.loads(JsonFormatter().format(record))
    assert doc["level"] == "ERROR"
    assert doc["logger"] == "espazza.reconciliation"
    assert doc["message"] == "payment captured"
    assert doc["purchase_id"] == "p1"
    assert doc["request_id"] is None
