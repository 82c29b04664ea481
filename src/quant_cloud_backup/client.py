from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog

from .models import BackupRecord, DownloadLink, Environment

DEFAULT_TIMEOUT_SECONDS = 30.0
USER_AGENT = "quant-cloud-backup/0.1.0"

logger = structlog.get_logger(__name__)


class BackupApiError(RuntimeError):
    """Raised when the management API rejects a call or cannot be reached."""

    def __init__(self, message: str, *, status_code: int | None = None, remote_message: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.remote_message = remote_message


class BackupServiceClient(Protocol):
    def get_environment(self, organization: str, application: str, environment: str) -> Environment: ...

    def create_backup(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        *,
        description: str,
    ) -> BackupRecord: ...

    def list_backups(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        *,
        order: str | None = None,
        status: str | None = None,
    ) -> list[BackupRecord]: ...

    def download_backup(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        backup_id: str,
    ) -> DownloadLink: ...

    def delete_backup(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        backup_id: str,
    ) -> None: ...


class QuantCloudClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> QuantCloudClient:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def get_environment(self, organization: str, application: str, environment: str) -> Environment:
        payload = self._request("GET", _environment_path(organization, application, environment))
        name = environment
        if isinstance(payload, dict):
            name = str(payload.get("envName") or payload.get("name") or environment)
        return Environment(organization=organization, application=application, name=name)

    def create_backup(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        *,
        description: str,
    ) -> BackupRecord:
        payload = self._request(
            "POST",
            _backups_path(organization, application, environment, backup_type),
            json={"description": description},
        )
        if not isinstance(payload, dict):
            raise BackupApiError("create backup returned an unexpected response body")
        return BackupRecord.from_payload(payload)

    def list_backups(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        *,
        order: str | None = None,
        status: str | None = None,
    ) -> list[BackupRecord]:
        params: dict[str, str] = {}
        if order:
            params["order"] = order
        if status:
            params["status"] = status

        payload = self._request(
            "GET",
            _backups_path(organization, application, environment, backup_type),
            params=params or None,
        )
        items: Any = payload
        if isinstance(payload, dict):
            items = payload.get("backups") or payload.get("data") or []
        if not isinstance(items, list):
            raise BackupApiError("list backups returned an unexpected response body")
        return [BackupRecord.from_payload(item) for item in items if isinstance(item, dict)]

    def download_backup(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        backup_id: str,
    ) -> DownloadLink:
        payload = self._request(
            "GET",
            f"{_backups_path(organization, application, environment, backup_type)}/{_segment(backup_id)}/download",
        )
        if not isinstance(payload, dict):
            raise BackupApiError("download backup returned an unexpected response body")
        url = payload.get("downloadUrl") or payload.get("url")
        if not url:
            raise BackupApiError("download backup response did not include a download URL")
        expires_at = payload.get("expiresAt")
        return DownloadLink(url=str(url), expires_at=str(expires_at) if expires_at else None)

    def delete_backup(
        self,
        organization: str,
        application: str,
        environment: str,
        backup_type: str,
        backup_id: str,
    ) -> None:
        self._request(
            "DELETE",
            f"{_backups_path(organization, application, environment, backup_type)}/{_segment(backup_id)}",
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        logger.debug("api_request", method=method, path=path)
        try:
            response = self._http.request(method, path, params=params, json=json)
        except httpx.HTTPError as error:
            raise BackupApiError(f"{method} {path} failed: {_error_message(error)}") from error

        if response.status_code >= 400:
            remote_message = _remote_message(response)
            reason = remote_message or response.reason_phrase or "request rejected"
            raise BackupApiError(
                f"{method} {path} returned HTTP {response.status_code}: {reason}",
                status_code=response.status_code,
                remote_message=remote_message,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as error:
            raise BackupApiError(f"{method} {path} returned a non-JSON body") from error


def build_download_url(
    base_url: str,
    organization: str,
    application: str,
    environment: str,
    backup_type: str,
    backup_id: str,
) -> str:
    path = f"{_backups_path(organization, application, environment, backup_type)}/{_segment(backup_id)}/download"
    return f"{base_url.rstrip('/')}{path}"


def _environment_path(organization: str, application: str, environment: str) -> str:
    return (
        f"/organizations/{_segment(organization)}"
        f"/applications/{_segment(application)}"
        f"/environments/{_segment(environment)}"
    )


def _backups_path(organization: str, application: str, environment: str, backup_type: str) -> str:
    return f"{_environment_path(organization, application, environment)}/backups/{_segment(backup_type)}"


def _segment(value: str) -> str:
    return quote(value, safe="")


def _remote_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
