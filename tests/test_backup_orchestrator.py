from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import Mock

import pytest

from quant_cloud_backup.backup import (
    BackupOrchestrator,
    EnvironmentNotFound,
    NoBackupsFound,
    select_latest,
    validate_request,
)
from quant_cloud_backup.client import BackupApiError
from quant_cloud_backup.models import BackupRecord, BackupRequest, DownloadLink, Environment

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _record(backup_id: str, *, days_ago: float = 0, status: str = "completed", created_at: datetime | None = None) -> BackupRecord:
    return BackupRecord(
        id=backup_id,
        description=f"backup {backup_id}",
        status=status,
        created_at=created_at if created_at is not None else _NOW - timedelta(days=days_ago),
    )


def _request(**overrides: Any) -> BackupRequest:
    raw: dict[str, Any] = {
        "organization": "acme",
        "app_name": "storefront",
        "environment_name": "production",
    }
    raw.update(overrides)
    return validate_request(raw)


def _client() -> Mock:
    client = Mock()
    client.get_environment.return_value = Environment("acme", "storefront", "production")
    return client


def _orchestrator(client: Mock) -> BackupOrchestrator:
    return BackupOrchestrator(
        client=client,
        base_url="https://dashboard.example.test/api/v3",
        sleep=Mock(),
        clock=lambda: _NOW,
    )


def test_run_with_create_and_no_wait_returns_backup_without_polling() -> None:
    client = _client()
    client.create_backup.return_value = _record("bkp-1", status="in_progress")

    result = _orchestrator(client).run(_request(operation="create", type="database"))

    assert result.backup is not None
    assert result.backup.id == "bkp-1"
    client.create_backup.assert_called_once()
    client.list_backups.assert_not_called()


def test_run_with_create_and_no_description_generates_environment_based_name() -> None:
    client = _client()
    client.create_backup.return_value = _record("bkp-1", status="in_progress")

    _orchestrator(client).run(_request())

    _, kwargs = client.create_backup.call_args
    assert kwargs["description"].startswith("backup-production-")


def test_run_with_create_and_backup_name_passes_description() -> None:
    client = _client()
    client.create_backup.return_value = _record("bkp-1", status="in_progress")

    _orchestrator(client).run(_request(backup_name="pre-release"))

    client.create_backup.assert_called_once_with(
        "acme", "storefront", "production", "database", description="pre-release"
    )


def test_run_with_missing_environment_raises_environment_not_found_and_skips_operation() -> None:
    client = _client()
    client.get_environment.side_effect = BackupApiError("HTTP 401", status_code=401, remote_message="Unauthorized")

    with pytest.raises(EnvironmentNotFound, match="Environment production does not exist"):
        _orchestrator(client).run(_request())

    client.create_backup.assert_not_called()


def test_run_with_list_skips_environment_guard_and_forwards_filters() -> None:
    client = _client()
    client.list_backups.return_value = [_record("bkp-2", days_ago=1), _record("bkp-1", days_ago=2)]

    result = _orchestrator(client).run(_request(operation="list", sort_order="asc", filter_status="completed"))

    assert [record.id for record in result.backups] == ["bkp-2", "bkp-1"]
    client.get_environment.assert_not_called()
    client.list_backups.assert_called_once_with(
        "acme", "storefront", "production", "database", order="asc", status="completed"
    )


def test_run_with_download_latest_resolves_newest_backup_and_returns_its_url() -> None:
    client = _client()
    older = _record("bkp-t1", days_ago=3)
    newer = _record("bkp-t2", days_ago=1)
    client.list_backups.return_value = [older, newer]
    client.download_backup.return_value = DownloadLink(url="https://cdn.example.test/bkp-t2.sql.gz")

    result = _orchestrator(client).run(_request(operation="download", backup_id="latest"))

    assert result.resolved_backup == newer
    assert result.download == DownloadLink(url="https://cdn.example.test/bkp-t2.sql.gz")
    client.download_backup.assert_called_once_with("acme", "storefront", "production", "database", "bkp-t2")


def test_run_with_download_latest_and_empty_scope_raises_no_backups_found() -> None:
    client = _client()
    client.list_backups.return_value = []

    with pytest.raises(NoBackupsFound, match="No backups found for environment production"):
        _orchestrator(client).run(_request(operation="download", backup_id="latest"))

    client.download_backup.assert_not_called()


def test_run_with_download_failure_falls_back_to_constructed_url() -> None:
    client = _client()
    client.list_backups.return_value = [_record("bkp-9", days_ago=1)]
    client.download_backup.side_effect = BackupApiError("HTTP 404", status_code=404)

    result = _orchestrator(client).run(_request(operation="download", backup_id="bkp-9", type="filesystem"))

    assert result.download is not None
    assert result.download.fallback is True
    assert result.download.url == (
        "https://dashboard.example.test/api/v3/organizations/acme/applications/storefront"
        "/environments/production/backups/filesystem/bkp-9/download"
    )
    assert result.resolved_backup is None


def test_resolve_latest_is_idempotent_for_unchanged_listing() -> None:
    client = _client()
    client.list_backups.return_value = [_record("a", days_ago=5), _record("b", days_ago=0.5), _record("c", days_ago=2)]
    orchestrator = _orchestrator(client)
    request = _request(operation="download", backup_id="latest")

    first = orchestrator.resolve_latest(request)
    second = orchestrator.resolve_latest(request)

    assert first.id == second.id == "b"


def test_select_latest_with_duplicate_timestamps_prefers_later_list_position() -> None:
    created_at = _NOW - timedelta(days=1)
    records = [_record("first", created_at=created_at), _record("second", created_at=created_at)]

    assert select_latest(records).id == "second"


def test_select_latest_with_missing_timestamps_prefers_dated_record() -> None:
    undated = BackupRecord(id="undated", description="", status="completed", created_at=None)

    assert select_latest([_record("dated", days_ago=30), undated]).id == "dated"


def test_run_with_delete_by_id_deletes_single_backup() -> None:
    client = _client()

    result = _orchestrator(client).run(_request(operation="delete", backup_id="bkp-5"))

    assert result.deletion is not None
    assert result.deletion.deleted_count == 1
    assert result.deletion.deleted_ids == ["bkp-5"]
    client.delete_backup.assert_called_once_with("acme", "storefront", "production", "database", "bkp-5")
    client.list_backups.assert_not_called()


def test_run_with_delete_by_id_failure_propagates_error() -> None:
    client = _client()
    client.delete_backup.side_effect = BackupApiError("HTTP 409", status_code=409, remote_message="Backup is locked")

    with pytest.raises(BackupApiError, match="HTTP 409"):
        _orchestrator(client).run(_request(operation="delete", backup_id="bkp-5"))


def test_run_with_delete_latest_resolves_before_deleting() -> None:
    client = _client()
    client.list_backups.return_value = [_record("old", days_ago=4), _record("new", days_ago=1)]

    result = _orchestrator(client).run(_request(operation="delete", backup_id="latest"))

    assert result.resolved_backup is not None
    assert result.resolved_backup.id == "new"
    client.delete_backup.assert_called_once_with("acme", "storefront", "production", "database", "new")


def test_run_with_delete_older_than_removes_only_backups_before_cutoff() -> None:
    client = _client()
    client.list_backups.return_value = [_record("ten-days", days_ago=10), _record("two-days", days_ago=2)]

    result = _orchestrator(client).run(_request(operation="delete", older_than_days="7"))

    assert result.deletion is not None
    assert result.deletion.deleted_count == 1
    assert result.deletion.deleted_ids == ["ten-days"]
    assert result.deletion.failures == {}
    client.delete_backup.assert_called_once_with("acme", "storefront", "production", "database", "ten-days")


def test_delete_older_than_with_partial_failures_continues_and_records_each_failure() -> None:
    client = _client()
    client.list_backups.return_value = [
        _record("a", days_ago=30),
        _record("b", days_ago=20),
        _record("c", days_ago=15),
        _record("d", days_ago=9),
        _record("fresh", days_ago=1),
    ]

    def _delete(_org: str, _app: str, _env: str, _type: str, backup_id: str) -> None:
        if backup_id in {"b", "d"}:
            raise BackupApiError(f"HTTP 500 deleting {backup_id}", status_code=500)

    client.delete_backup.side_effect = _delete

    outcome = _orchestrator(client).delete_older_than(_request(operation="delete", older_than_days=7), 7)

    assert outcome.attempted_ids == ["a", "b", "c", "d"]
    assert outcome.deleted_count == 2
    assert outcome.succeeded_ids == {"a", "c"}
    assert set(outcome.failures) == {"b", "d"}
    assert "HTTP 500 deleting b" in outcome.failures["b"]
    assert client.delete_backup.call_count == 4


def test_delete_older_than_with_no_candidates_returns_empty_outcome() -> None:
    client = _client()
    client.list_backups.return_value = [_record("fresh", days_ago=1)]

    outcome = _orchestrator(client).delete_older_than(_request(operation="delete", older_than_days=7), 7)

    assert outcome.deleted_count == 0
    assert outcome.attempted_ids == []
    client.delete_backup.assert_not_called()


def test_delete_older_than_with_empty_scope_raises_no_backups_found() -> None:
    client = _client()
    client.list_backups.return_value = []

    with pytest.raises(NoBackupsFound):
        _orchestrator(client).delete_older_than(_request(operation="delete", older_than_days=7), 7)


def test_delete_older_than_skips_records_without_creation_time() -> None:
    client = _client()
    client.list_backups.return_value = [
        BackupRecord(id="undated", description="", status="completed", created_at=None),
        _record("old", days_ago=12),
    ]

    outcome = _orchestrator(client).delete_older_than(_request(operation="delete", older_than_days=7), 7)

    assert outcome.attempted_ids == ["old"]


def test_run_with_download_of_unknown_id_raises_without_requesting_url() -> None:
    client = _client()
    client.list_backups.return_value = [_record("bkp-1", days_ago=1)]
    client.download_backup.side_effect = BackupApiError("HTTP 404", status_code=404, remote_message="Backup not found")

    with pytest.raises(NoBackupsFound, match="Backup does-not-exist not found"):
        _orchestrator(client).run(_request(operation="download", backup_id="does-not-exist"))

    client.download_backup.assert_not_called()


def test_run_with_download_of_known_id_confirms_listing_then_downloads() -> None:
    client = _client()
    client.list_backups.return_value = [_record("bkp-2", days_ago=1), _record("bkp-1", days_ago=3)]
    client.download_backup.return_value = DownloadLink(url="https://cdn.example.test/bkp-1.sql.gz")

    result = _orchestrator(client).run(_request(operation="download", backup_id="bkp-1"))

    assert result.download == DownloadLink(url="https://cdn.example.test/bkp-1.sql.gz")
    client.list_backups.assert_called_once_with("acme", "storefront", "production", "database")
    client.download_backup.assert_called_once_with("acme", "storefront", "production", "database", "bkp-1")
