from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Mapping

LATEST_SENTINEL = "latest"

OPERATIONS = ("create", "list", "download", "delete")
BACKUP_TYPES = ("database", "filesystem")
SORT_ORDERS = ("asc", "desc")
FILTER_STATUSES = ("completed", "failed", "running")


class PollPhase(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Environment:
    organization: str
    application: str
    name: str


@dataclass(frozen=True)
class BackupRecord:
    id: str
    description: str
    status: str
    created_at: datetime | None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> BackupRecord:
        backup_id = payload.get("backupId") or payload.get("id") or ""
        description = payload.get("description") or payload.get("name") or ""
        created_at = payload.get("createdAt") or payload.get("created_at")
        return cls(
            id=str(backup_id),
            description=str(description),
            status=str(payload.get("status") or "").strip().lower(),
            created_at=parse_timestamp(created_at),
            raw=dict(payload),
        )

    @property
    def created_at_iso(self) -> str:
        if self.created_at is None:
            return ""
        return self.created_at.isoformat().replace("+00:00", "Z")

    def to_output(self) -> dict[str, Any]:
        output = dict(self.raw)
        output.update(
            {
                "id": self.id,
                "description": self.description,
                "status": self.status,
                "createdAt": self.created_at_iso or None,
            }
        )
        return output


@dataclass(frozen=True)
class ExplicitBackupId:
    backup_id: str


@dataclass(frozen=True)
class LatestBackup:
    pass


BackupRef = ExplicitBackupId | LatestBackup


def parse_backup_ref(value: str | None) -> BackupRef | None:
    normalized = (value or "").strip()
    if not normalized:
        return None
    if normalized.lower() == LATEST_SENTINEL:
        return LatestBackup()
    return ExplicitBackupId(normalized)


@dataclass(frozen=True)
class BackupRequest:
    operation: str
    organization: str
    application: str
    environment: str
    backup_type: str = "database"
    backup_ref: BackupRef | None = None
    description: str | None = None
    older_than_days: int | None = None
    sort_order: str = "desc"
    filter_status: str | None = None
    wait: bool = False
    wait_interval: int = 10
    max_retries: int = 30


@dataclass
class PollState:
    target_backup_id: str
    max_attempts: int
    interval_seconds: int
    attempts_made: int = 0
    phase: PollPhase = PollPhase.RUNNING
    last_known_status: str | None = None


@dataclass
class BulkDeleteOutcome:
    attempted_ids: list[str] = field(default_factory=list)
    succeeded_ids: set[str] = field(default_factory=set)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def deleted_count(self) -> int:
        return len(self.succeeded_ids)

    @property
    def deleted_ids(self) -> list[str]:
        # Attempt order is kept so outputs are deterministic.
        return [backup_id for backup_id in self.attempted_ids if backup_id in self.succeeded_ids]


@dataclass(frozen=True)
class DownloadLink:
    url: str
    expires_at: str | None = None
    fallback: bool = False


@dataclass(frozen=True)
class OperationResult:
    operation: str
    backup: BackupRecord | None = None
    backups: tuple[BackupRecord, ...] = ()
    download: DownloadLink | None = None
    resolved_backup: BackupRecord | None = None
    deletion: BulkDeleteOutcome | None = None


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=UTC)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
