import json
import logging

from ppe_runtime.logging import configure_logging, log_json, sanitize_text


def get_last_log_json(caplog):
    for rec in reversed(caplog.records):
        try:
            return json.loads(rec.getMessage())
        except Exception:
            continue
    return {}


def test_redacts_sensitive_keys_and_values(caplog):
    caplog.set_level(logging.INFO)
    configure_logging("test")

    log_json(logging.INFO, "provider_error",
             authorization="Bearer xyz.abc.def",
             api_key="secretkey",
             nested={"x-api-key": "123", "email": "user@example.com"},
             url="https://example.test/models/m:generateContent?key=AIzaSECRET",
             msg="token bearer ABC.D.E")

    payload = get_last_log_json(caplog)
    assert payload["event"] == "provider_error"
    assert payload["authorization"] == "[REDACTED]"
    assert payload["api_key"] == "[REDACTED]"
    assert payload["nested"]["x-api-key"] == "[REDACTED]"
    assert payload["nested"]["email"] == "[REDACTED_EMAIL]"
    assert "AIzaSECRET" not in payload["url"]
    assert "ABC.D.E" not in payload["msg"]


def test_sanitize_text_truncates_long_bodies():
    text = sanitize_text("x" * 5000)
    assert text.endswith("...[truncated]")
    assert len(text) < 1100
