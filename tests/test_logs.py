from __future__ import annotations

from quant_cloud_backup.logs import redact_sensitive_values


def test_redact_sensitive_values_masks_secrets_including_nested_headers() -> None:
    event = {
        "event": "api_request",
        "api_key": "secret",
        "headers": {"Authorization": "Bearer secret", "Accept": "application/json"},
        "backup_id": "bkp-1",
    }

    redacted = redact_sensitive_values(None, "info", event)

    assert redacted["api_key"] == "***REDACTED***"
    assert redacted["headers"] == {"Authorization": "***REDACTED***", "Accept": "application/json"}
    assert redacted["backup_id"] == "bkp-1"
