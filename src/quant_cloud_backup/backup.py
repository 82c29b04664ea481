from __future__ import annotations

from datetime import UTC, datetime, timedelta
import time
from typing import Any, Callable, Iterable, Mapping

import structlog

from .client import BackupApiError, BackupServiceClient, build_download_url
from .models import (
    BACKUP_TYPES,
    FILTER_STATUSES,
    OPERATIONS,
    SORT_ORDERS,
    BackupRecord,
    BackupRequest,
    BulkDeleteOutcome,
    DownloadLink,
    Environment,
    ExplicitBackupId,
    LatestBackup,
    OperationResult,
    PollPhase,
    PollState,
    parse_backup_ref,
)

DEFAULT_WAIT_INTERVAL_SECONDS = 10
DEFAULT_MAX_RETRIES = 30

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"", "0", "false", "no", "off"}
_TERMINAL_PHASES = {PollPhase.COMPLETED, PollPhase.FAILED, PollPhase.TIMED_OUT}
_OLDEST_TIMESTAMP = datetime.min.replace(tzinfo=UTC)

logger = structlog.get_logger(__name__)


class BackupActionError(RuntimeError):
    """Base class for failures that abort the action."""


class InvalidInput(BackupActionError):
    """Raised when the request is missing or carries malformed parameters."""


class EnvironmentNotFound(BackupActionError):
    """Raised when the target environment cannot be confirmed."""


class NoBackupsFound(BackupActionError):
    """Raised when a scope that must contain backups is empty."""


class BackupFailed(BackupActionError):
    """Raised when the service reports a terminal failed status."""


class BackupTimedOut(BackupActionError):
    """Raised when the completion poller exhausts its retry budget."""


class TransientQueryFault(RuntimeError):
    """A status query failed; the poller logs it and keeps going."""


def validate_request(raw: Mapping[str, Any]) -> BackupRequest:
    backup_type = _text(raw.get("type")) or "database"
    if backup_type not in BACKUP_TYPES:
        raise InvalidInput(f"Invalid type: {backup_type}. Must be one of: {', '.join(BACKUP_TYPES)}")

    operation = _text(raw.get("operation")) or "create"
    if operation not in OPERATIONS:
        raise InvalidInput(f"Invalid operation: {operation}. Must be one of: {', '.join(OPERATIONS)}")

    backup_ref = parse_backup_ref(_text(raw.get("backup_id")))
    older_than_days = _parse_int(raw.get("older_than_days"), name="older_than_days", minimum=0)

    if operation == "download" and backup_ref is None:
        raise InvalidInput("backup_id is required for download operation")
    if operation == "delete" and backup_ref is None and older_than_days is None:
        raise InvalidInput("Either backup_id or older_than_days is required for delete operation")

    missing = [name for name in ("organization", "app_name", "environment_name") if not _text(raw.get(name))]
    if missing:
        raise InvalidInput(f"Missing required input(s): {', '.join(missing)}")

    sort_order = _text(raw.get("sort_order")).lower() or "desc"
    if sort_order not in SORT_ORDERS:
        raise InvalidInput(f"Invalid sort_order: {sort_order}. Must be one of: {', '.join(SORT_ORDERS)}")

    filter_status = _text(raw.get("filter_status")).lower() or None
    if filter_status is not None and filter_status not in FILTER_STATUSES:
        raise InvalidInput(
            f"Invalid filter_status: {filter_status}. Must be one of: {', '.join(FILTER_STATUSES)}"
        )

    wait_interval = _parse_int(raw.get("wait_interval"), name="wait_interval", minimum=1)
    max_retries = _parse_int(raw.get("max_retries"), name="max_retries", minimum=1)

    return BackupRequest(
        operation=operation,
        organization=_text(raw.get("organization")),
        application=_text(raw.get("app_name")),
        environment=_text(raw.get("environment_name")),
        backup_type=backup_type,
        backup_ref=backup_ref,
        description=_text(raw.get("backup_name")) or None,
        older_than_days=older_than_days,
        sort_order=sort_order,
        filter_status=filter_status,
        wait=_parse_bool(raw.get("wait"), name="wait"),
        wait_interval=DEFAULT_WAIT_INTERVAL_SECONDS if wait_interval is None else wait_interval,
        max_retries=DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
    )


def next_poll_phase(phase: PollPhase, observed_status: str | None) -> PollPhase:
    """Return the poller phase after observing ``observed_status``.

    ``None`` means the backup was not visible in the listing yet.
    """
    if phase in _TERMINAL_PHASES:
        return phase
    if observed_status is None:
        return PollPhase.UNKNOWN

    normalized = observed_status.strip().lower()
    if normalized == "completed":
        return PollPhase.COMPLETED
    if normalized == "failed":
        return PollPhase.FAILED
    return PollPhase.RUNNING


def select_latest(records: Iterable[BackupRecord]) -> BackupRecord:
    """Pick the most recently created record.

    Equal timestamps resolve to the record that appears later in the list.
    """
    indexed = list(enumerate(records))
    if not indexed:
        raise NoBackupsFound("No backups found")
    _, latest = max(indexed, key=lambda item: (item[1].created_at or _OLDEST_TIMESTAMP, item[0]))
    return latest


class BackupOrchestrator:
    def __init__(
        self,
        *,
        client: BackupServiceClient,
        base_url: str = "",
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.base_url = base_url
        self._sleep = sleep or time.sleep
        self._clock = clock or _utc_now

    def run(self, request: BackupRequest) -> OperationResult:
        log = logger.bind(
            operation=request.operation,
            organization=request.organization,
            application=request.application,
            environment=request.environment,
            backup_type=request.backup_type,
        )
        log.info("Quant Cloud environment backup action started")

        if request.operation != "list":
            self.ensure_environment(request)

        if request.operation == "create":
            return self._create(request)
        if request.operation == "list":
            return self._list(request)
        if request.operation == "download":
            return self._download(request)
        if request.operation == "delete":
            return self._delete(request)
        raise InvalidInput(f"Unsupported operation: {request.operation}")

    def ensure_environment(self, request: BackupRequest) -> Environment:
        try:
            environment = self.client.get_environment(
                request.organization,
                request.application,
                request.environment,
            )
        except BackupApiError as error:
            raise EnvironmentNotFound(f"Environment {request.environment} does not exist") from error

        logger.info("Environment exists", environment=request.environment)
        return environment

    def resolve_latest(self, request: BackupRequest) -> BackupRecord:
        logger.info("Resolving latest backup", environment=request.environment, backup_type=request.backup_type)
        records = self.client.list_backups(
            request.organization,
            request.application,
            request.environment,
            request.backup_type,
            order="desc",
        )
        if not records:
            raise NoBackupsFound(f"No backups found for environment {request.environment}")

        # Server-side ordering is not relied upon.
        latest = select_latest(records)
        logger.info(
            "Latest backup resolved",
            backup_id=latest.id,
            description=latest.description,
            created_at=latest.created_at_iso,
        )
        return latest

    def ensure_backup_exists(self, request: BackupRequest, backup_id: str) -> BackupRecord:
        records = self.client.list_backups(
            request.organization,
            request.application,
            request.environment,
            request.backup_type,
        )
        for record in records:
            if record.id == backup_id:
                logger.info("Backup found", backup_id=record.id, status=record.status)
                return record
        raise NoBackupsFound(f"Backup {backup_id} not found in environment {request.environment}")

    def delete_older_than(self, request: BackupRequest, older_than_days: int) -> BulkDeleteOutcome:
        cutoff = self._clock() - timedelta(days=older_than_days)
        logger.info("Deleting backups older than cutoff", older_than_days=older_than_days, cutoff=cutoff.isoformat())

        records = self.client.list_backups(
            request.organization,
            request.application,
            request.environment,
            request.backup_type,
        )
        if not records:
            raise NoBackupsFound(f"No backups found for environment {request.environment}")

        candidates = [record for record in records if record.created_at is not None and record.created_at < cutoff]
        logger.info("Backups selected for deletion", candidates=len(candidates), scanned=len(records))

        outcome = BulkDeleteOutcome()
        for record in candidates:
            outcome.attempted_ids.append(record.id)
            try:
                self.client.delete_backup(
                    request.organization,
                    request.application,
                    request.environment,
                    request.backup_type,
                    record.id,
                )
            except BackupApiError as error:
                message = _error_message(error)
                logger.warning("Failed to delete backup", backup_id=record.id, error=message)
                outcome.failures[record.id] = message
                continue
            outcome.succeeded_ids.add(record.id)
            logger.info("Deleted backup", backup_id=record.id, created_at=record.created_at_iso)

        logger.info(
            "Bulk delete finished",
            deleted_count=outcome.deleted_count,
            failed_count=len(outcome.failures),
        )
        return outcome

    def wait_for_completion(self, request: BackupRequest, backup: BackupRecord) -> BackupRecord:
        state = PollState(
            target_backup_id=backup.id,
            max_attempts=request.max_retries,
            interval_seconds=request.wait_interval,
            last_known_status=backup.status,
        )
        logger.info(
            "Waiting for backup to complete",
            backup_id=state.target_backup_id,
            wait_interval=state.interval_seconds,
            max_retries=state.max_attempts,
        )

        while True:
            observed: BackupRecord | None = None
            try:
                observed = self._query_status(request, state.target_backup_id)
            except TransientQueryFault as fault:
                logger.warning("Failed to check backup status, retrying", backup_id=state.target_backup_id, error=str(fault))
                state.phase = PollPhase.RUNNING
            else:
                state.phase = next_poll_phase(state.phase, observed.status if observed else None)
                if observed is not None:
                    state.last_known_status = observed.status

            if state.phase is PollPhase.COMPLETED and observed is not None:
                logger.info("Backup completed", backup_id=observed.id)
                return observed
            if state.phase is PollPhase.FAILED:
                raise BackupFailed(f"Backup {state.target_backup_id} failed")
            if state.phase is PollPhase.UNKNOWN:
                logger.info("Backup not visible yet", backup_id=state.target_backup_id)
                state.phase = PollPhase.RUNNING
            else:
                logger.info("Backup in progress", backup_id=state.target_backup_id, status=state.last_known_status)

            state.attempts_made += 1
            if state.attempts_made > state.max_attempts:
                state.phase = PollPhase.TIMED_OUT
                raise BackupTimedOut(
                    f"Backup timed out after {state.attempts_made} retries "
                    f"(waited {state.attempts_made * state.interval_seconds} seconds)"
                )
            self._sleep(state.interval_seconds)

    def _create(self, request: BackupRequest) -> OperationResult:
        description = request.description or f"backup-{request.environment}-{int(self._clock().timestamp() * 1000)}"
        logger.info("Creating backup", environment=request.environment, backup_type=request.backup_type)

        backup = self.client.create_backup(
            request.organization,
            request.application,
            request.environment,
            request.backup_type,
            description=description,
        )
        logger.info("Created backup", backup_id=backup.id, status=backup.status)

        if request.wait:
            backup = self.wait_for_completion(request, backup)
        return OperationResult(operation="create", backup=backup)

    def _list(self, request: BackupRequest) -> OperationResult:
        logger.info("Listing backups", environment=request.environment or "all environments")
        records = self.client.list_backups(
            request.organization,
            request.application,
            request.environment,
            request.backup_type,
            order=request.sort_order,
            status=request.filter_status,
        )
        logger.info("Found backups", count=len(records))
        for index, record in enumerate(records, start=1):
            logger.info(
                "Backup",
                index=index,
                backup_id=record.id,
                description=record.description,
                status=record.status,
                created_at=record.created_at_iso,
            )
        return OperationResult(operation="list", backups=tuple(records))

    def _download(self, request: BackupRequest) -> OperationResult:
        resolved: BackupRecord | None = None
        if isinstance(request.backup_ref, LatestBackup):
            resolved = self.resolve_latest(request)
            backup_id = resolved.id
        elif isinstance(request.backup_ref, ExplicitBackupId):
            backup_id = self.ensure_backup_exists(request, request.backup_ref.backup_id).id
        else:
            raise InvalidInput("backup_id is required for download operation")

        logger.info("Downloading backup", backup_id=backup_id, environment=request.environment)
        link = self._download_link(request, backup_id)
        return OperationResult(operation="download", download=link, resolved_backup=resolved)

    def _download_link(self, request: BackupRequest, backup_id: str) -> DownloadLink:
        try:
            link = self.client.download_backup(
                request.organization,
                request.application,
                request.environment,
                request.backup_type,
                backup_id,
            )
        except BackupApiError as error:
            logger.warning("Download URL request failed, using constructed URL", backup_id=backup_id, error=_error_message(error))
            return DownloadLink(
                url=build_download_url(
                    self.base_url,
                    request.organization,
                    request.application,
                    request.environment,
                    request.backup_type,
                    backup_id,
                ),
                fallback=True,
            )

        logger.info("Download URL obtained", backup_id=backup_id, expires_at=link.expires_at)
        return link

    def _delete(self, request: BackupRequest) -> OperationResult:
        if request.backup_ref is None:
            if request.older_than_days is None:
                raise InvalidInput("Either backup_id or older_than_days is required for delete operation")
            outcome = self.delete_older_than(request, request.older_than_days)
            return OperationResult(operation="delete", deletion=outcome)

        resolved: BackupRecord | None = None
        if isinstance(request.backup_ref, LatestBackup):
            resolved = self.resolve_latest(request)
            backup_id = resolved.id
        else:
            backup_id = request.backup_ref.backup_id

        logger.info("Deleting backup", backup_id=backup_id, environment=request.environment)
        outcome = BulkDeleteOutcome(attempted_ids=[backup_id])
        self.client.delete_backup(
            request.organization,
            request.application,
            request.environment,
            request.backup_type,
            backup_id,
        )
        outcome.succeeded_ids.add(backup_id)
        logger.info("Deleted backup", backup_id=backup_id)
        return OperationResult(operation="delete", deletion=outcome, resolved_backup=resolved)

    def _query_status(self, request: BackupRequest, backup_id: str) -> BackupRecord | None:
        try:
            records = self.client.list_backups(
                request.organization,
                request.application,
                request.environment,
                request.backup_type,
            )
        except BackupApiError as error:
            raise TransientQueryFault(_error_message(error)) from error

        for record in records:
            if record.id == backup_id:
                return record
        return None


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_int(value: Any, *, name: str, minimum: int) -> int | None:
    if isinstance(value, bool):
        raise InvalidInput(f"{name} must be an integer")
    if isinstance(value, int):
        parsed = value
    else:
        text = _text(value)
        if not text:
            return None
        try:
            parsed = int(text)
        except ValueError as error:
            raise InvalidInput(f"{name} must be an integer, got: {text}") from error
    if parsed < minimum:
        raise InvalidInput(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed


def _parse_bool(value: Any, *, name: str) -> bool:
    if isinstance(value, bool):
        return value
    normalized = _text(value).lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise InvalidInput(f"{name} must be a boolean, got: {value}")


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
