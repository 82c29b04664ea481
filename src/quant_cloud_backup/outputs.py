from __future__ import annotations

import json
from pathlib import Path
import uuid

from .client import BackupApiError
from .models import OperationResult


def map_outputs(result: OperationResult) -> dict[str, str]:
    outputs: dict[str, str] = {"success": "true"}

    if result.operation == "create" and result.backup is not None:
        outputs["backup_id"] = result.backup.id
        outputs["backup_status"] = result.backup.status
    elif result.operation == "list":
        outputs["backup_list"] = json.dumps([record.to_output() for record in result.backups])
    elif result.operation == "download" and result.download is not None:
        outputs["download_url"] = result.download.url
        outputs["download_url_fallback"] = _bool_text(result.download.fallback)
        if result.resolved_backup is not None:
            outputs["resolved_backup_id"] = result.resolved_backup.id
            outputs["resolved_backup_name"] = result.resolved_backup.description
            outputs["resolved_backup_created_at"] = result.resolved_backup.created_at_iso
    elif result.operation == "delete" and result.deletion is not None:
        outputs["deleted_count"] = str(result.deletion.deleted_count)
        outputs["deleted_backups"] = json.dumps(result.deletion.deleted_ids)
        outputs["failed_deletions"] = json.dumps(result.deletion.failures, sort_keys=True)
        if result.resolved_backup is not None:
            outputs["resolved_backup_id"] = result.resolved_backup.id

    return outputs


def failure_message(error: BaseException) -> str:
    if isinstance(error, BackupApiError) and error.remote_message:
        return error.remote_message

    cause = error.__cause__
    if isinstance(cause, BackupApiError) and cause.remote_message and not str(error).strip():
        return cause.remote_message

    message = str(error).strip()
    return message or error.__class__.__name__


def write_outputs(outputs: dict[str, str], path: Path | None) -> None:
    if path is None:
        print(json.dumps(outputs, indent=2, sort_keys=True))
        return

    with path.open("a", encoding="utf-8") as handle:
        for name, value in outputs.items():
            handle.write(_format_output(name, value))


def _format_output(name: str, value: str) -> str:
    if "\n" not in value:
        return f"{name}={value}\n"
    delimiter = f"ghadelimiter_{uuid.uuid4()}"
    return f"{name}<<{delimiter}\n{value}\n{delimiter}\n"


def _bool_text(value: bool) -> str:
    return "true" if value else "false"
