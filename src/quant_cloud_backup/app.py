from __future__ import annotations

import json
from typing import Any

import streamlit as st

from quant_cloud_backup.backup import BackupActionError, BackupOrchestrator, validate_request
from quant_cloud_backup.client import BackupApiError, QuantCloudClient
from quant_cloud_backup.config import AppConfig
from quant_cloud_backup.logs import configure_logging
from quant_cloud_backup.models import BackupRecord, OperationResult
from quant_cloud_backup.outputs import failure_message, map_outputs

_OPERATION_LABELS = {
    "Create backup": "create",
    "List backups": "list",
    "Download backup": "download",
    "Delete backups": "delete",
}
_TYPE_DATABASE_LABEL = "Database"
_TYPE_FILESYSTEM_LABEL = "Filesystem"
_DELETE_MODE_BY_ID_LABEL = "Single backup"
_DELETE_MODE_BY_AGE_LABEL = "Older than N days"

_FAILURE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "does not exist",
        "Verify the organization, application, and environment names and that the API key can read them.",
    ),
    (
        "no backups found",
        "Create a backup first or check that the selected backup type matches existing backups.",
    ),
    (
        "timed out",
        "The backup may still finish; increase max retries or the wait interval and list backups later.",
    ),
    (
        "failed",
        "Inspect the backup in the Quant dashboard and retry once the environment is healthy.",
    ),
    (
        "required",
        "Fill in the missing field before running the operation.",
    ),
    (
        "invalid",
        "Correct the highlighted value and run the operation again.",
    ),
)


def _initialize_state() -> None:
    defaults = {
        "last_outputs": {},
        "last_backups": [],
        "last_error": "",
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_backup_rows(records: list[BackupRecord]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for record in records:
        rows.append(
            {
                "id": record.id,
                "description": record.description or "(none)",
                "status": record.status or "unknown",
                "created_at": record.created_at_iso or "unknown",
            }
        )
    return rows


def _build_output_rows(outputs: dict[str, str]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for name, value in outputs.items():
        if name == "backup_list":
            value = f"{len(json.loads(value))} backup(s)"
        rows.append({"output": name, "value": value})
    return rows


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    lowered = normalized.lower()
    for marker, hint in _FAILURE_HINTS:
        if marker in lowered:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Check the API key, base URL, and the action logs for more detail."


def _validate_connection_inputs(
    *,
    api_key_input: str,
    organization_input: str,
    application_input: str,
    environment_input: str,
) -> list[str]:
    errors: list[str] = []
    if not api_key_input.strip():
        errors.append("API key is required.")
    if not organization_input.strip():
        errors.append("Organization is required.")
    if not application_input.strip():
        errors.append("Application name is required.")
    if not environment_input.strip():
        errors.append("Environment name is required.")
    return errors


def _backup_type_value(type_label: str) -> str:
    if type_label == _TYPE_FILESYSTEM_LABEL:
        return "filesystem"
    return "database"


def _build_raw_request(
    *,
    operation_label: str,
    type_label: str,
    organization: str,
    application: str,
    environment: str,
    backup_name: str = "",
    backup_id: str = "",
    delete_mode_label: str = _DELETE_MODE_BY_ID_LABEL,
    older_than_days: int | None = None,
    sort_order: str = "desc",
    filter_status: str = "",
    wait: bool = False,
    wait_interval: int = 10,
    max_retries: int = 30,
) -> dict[str, Any]:
    operation = _OPERATION_LABELS.get(operation_label, "create")
    raw: dict[str, Any] = {
        "operation": operation,
        "type": _backup_type_value(type_label),
        "organization": organization.strip(),
        "app_name": application.strip(),
        "environment_name": environment.strip(),
    }

    if operation == "create":
        raw.update(
            {
                "backup_name": backup_name.strip(),
                "wait": wait,
                "wait_interval": wait_interval,
                "max_retries": max_retries,
            }
        )
    elif operation == "list":
        raw.update({"sort_order": sort_order, "filter_status": filter_status})
    elif operation == "download":
        raw["backup_id"] = backup_id.strip()
    elif operation == "delete":
        if delete_mode_label == _DELETE_MODE_BY_AGE_LABEL:
            raw["older_than_days"] = older_than_days
        else:
            raw["backup_id"] = backup_id.strip()

    return raw


def _run_operation(*, api_key: str, base_url: str, config: AppConfig, raw: dict[str, Any]) -> OperationResult:
    request = validate_request(raw)
    with QuantCloudClient(base_url=base_url, api_key=api_key, timeout_seconds=config.http_timeout_seconds) as client:
        orchestrator = BackupOrchestrator(client=client, base_url=base_url)
        if request.wait:
            with st.spinner(
                f"Waiting for backup to complete (every {request.wait_interval}s, up to {request.max_retries} retries)..."
            ):
                return orchestrator.run(request)
        return orchestrator.run(request)


def main() -> None:
    st.set_page_config(page_title="Quant Cloud Backup", layout="wide")
    _initialize_state()

    config = AppConfig()
    configure_logging(level=config.log_level, fmt=config.log_format)

    st.title("Quant Cloud Backup")
    st.caption("Create, list, download, and clean up environment backups through the Quant Cloud API.")

    st.sidebar.header("Connection")
    api_key_input = st.sidebar.text_input("API key", value="", type="password")
    base_url_input = st.sidebar.text_input("API base URL", value=config.base_url)
    organization_input = st.sidebar.text_input("Organization", value="")
    application_input = st.sidebar.text_input("Application", value="")
    environment_input = st.sidebar.text_input("Environment", value="")

    st.sidebar.header("Backup Type")
    type_label = st.sidebar.radio(
        "Type",
        options=[_TYPE_DATABASE_LABEL, _TYPE_FILESYSTEM_LABEL],
        index=0,
    )

    operation_label = st.selectbox("Operation", options=list(_OPERATION_LABELS), index=0)
    operation = _OPERATION_LABELS[operation_label]

    backup_name = ""
    backup_id = ""
    delete_mode_label = _DELETE_MODE_BY_ID_LABEL
    older_than_days: int | None = None
    sort_order = "desc"
    filter_status = ""
    wait = False
    wait_interval = 10
    max_retries = 30

    if operation == "create":
        backup_name = st.text_input("Backup description (optional)", value="")
        wait = st.checkbox("Wait for completion", value=False)
        wait_interval = int(st.number_input("Wait interval (seconds)", min_value=1, max_value=600, value=10, step=1, disabled=not wait))
        max_retries = int(st.number_input("Max retries", min_value=1, max_value=1000, value=30, step=1, disabled=not wait))
    elif operation == "list":
        sort_order = st.selectbox("Sort order", options=["desc", "asc"], index=0)
        filter_status = st.selectbox("Status filter", options=["", "completed", "failed", "running"], index=0)
    elif operation == "download":
        backup_id = st.text_input("Backup ID", value="latest", help="Use 'latest' for the most recent backup.")
    else:
        delete_mode_label = st.radio("Delete mode", options=[_DELETE_MODE_BY_ID_LABEL, _DELETE_MODE_BY_AGE_LABEL], index=0)
        if delete_mode_label == _DELETE_MODE_BY_AGE_LABEL:
            older_than_days = int(st.number_input("Older than (days)", min_value=0, max_value=3650, value=30, step=1))
            st.warning("Every backup of the selected type older than the cutoff will be deleted.")
        else:
            backup_id = st.text_input("Backup ID", value="", help="Use 'latest' for the most recent backup.")

    if st.button("Run", type="primary"):
        connection_errors = _validate_connection_inputs(
            api_key_input=api_key_input,
            organization_input=organization_input,
            application_input=application_input,
            environment_input=environment_input,
        )
        if connection_errors:
            for error in connection_errors:
                st.sidebar.error(error)
        else:
            raw = _build_raw_request(
                operation_label=operation_label,
                type_label=type_label,
                organization=organization_input,
                application=application_input,
                environment=environment_input,
                backup_name=backup_name,
                backup_id=backup_id,
                delete_mode_label=delete_mode_label,
                older_than_days=older_than_days,
                sort_order=sort_order,
                filter_status=filter_status,
                wait=wait,
                wait_interval=wait_interval,
                max_retries=max_retries,
            )
            try:
                result = _run_operation(
                    api_key=api_key_input.strip(),
                    base_url=base_url_input.strip() or config.base_url,
                    config=config,
                    raw=raw,
                )
                st.session_state.last_outputs = map_outputs(result)
                st.session_state.last_backups = list(result.backups)
                st.session_state.last_error = ""
            except (BackupActionError, BackupApiError) as error:
                st.session_state.last_outputs = {"success": "false"}
                st.session_state.last_backups = []
                st.session_state.last_error = failure_message(error)

    if st.session_state.last_error:
        st.error(_actionable_next_step(st.session_state.last_error))

    outputs: dict[str, str] = st.session_state.last_outputs
    if outputs:
        st.subheader("Outputs")
        st.dataframe(_build_output_rows(outputs), use_container_width=True, hide_index=True)
        download_url = outputs.get("download_url")
        if download_url:
            st.link_button("Open download URL", download_url)
            if outputs.get("download_url_fallback") == "true":
                st.info("The API did not return a signed URL; this link was constructed from the base URL.")
        failed = json.loads(outputs.get("failed_deletions", "{}"))
        if failed:
            st.warning(f"{len(failed)} backup(s) could not be deleted.")
            st.dataframe(
                [{"id": backup_id, "error": message} for backup_id, message in failed.items()],
                use_container_width=True,
                hide_index=True,
            )

    backups: list[BackupRecord] = st.session_state.last_backups
    if backups:
        st.subheader("Backups")
        st.dataframe(_build_backup_rows(backups), use_container_width=True, hide_index=True)


if __name__ == "__main__":
    main()
