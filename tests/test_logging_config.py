"""Log formatting and secret masking."""
import json
import logging

from app.logging_config import JSONFormatter, mask_secrets, request_id_ctx, tenant_id_ctx


def test_mask_secrets():
    assert "s3cret" not in mask_secrets('{"authSecret": "s3cret"}')
    assert "s3cret" not in mask_secrets('auth_secret="s3cret"')
    assert mask_secrets("Authorization: Bearer abc.def-123") == "Authorization: Bearer ***"
    assert mask_secrets("VM_AUTH_SECRET=abc== next") == "VM_AUTH_SECRET=*** next"
    assert mask_secrets("nothing to hide") == "nothing to hide"


def test_json_formatter_includes_context_and_masks():
    rid = request_id_ctx.set("req-1")
    tid = tenant_id_ctx.set("user-1")
    try:
        record = logging.LogRecord(
            "vmorch.test", logging.INFO, __file__, 1, 'sent {"token": "%s"}', ("abc",), None
        )
        entry = json.loads(JSONFormatter().format(record))
    finally:
        request_id_ctx.reset(rid)
        tenant_id_ctx.reset(tid)

    assert entry["level"] == "INFO"
    assert entry["logger"] == "vmorch.test"
    assert entry["request_id"] == "req-1"
    assert entry["tenant_id"] == "user-1"
    assert "abc" not in entry["message"]


def test_json_formatter_drops_empty_context():
    record = logging.LogRecord("vmorch.test", logging.WARNING, __file__, 1, "plain", (), None)
    entry = json.loads(JSONFormatter().format(record))
    assert "request_id" not in entry
    assert "tenant_id" not in entry
