from __future__ import annotations

import argparse
from pathlib import Path
import os
from typing import Sequence

import structlog

from .backup import BackupActionError, BackupOrchestrator, validate_request
from .client import BackupApiError, QuantCloudClient
from .config import AppConfig, ConfigurationError, load_action_inputs, load_inputs_file, merge_inputs
from .logs import configure_logging
from .outputs import failure_message, map_outputs, write_outputs

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quant-cloud-backup",
        description="Create, list, download, and delete Quant Cloud environment backups.",
    )
    parser.add_argument("--inputs-file", type=Path, help="YAML mapping of action inputs.")
    parser.add_argument("--api-key", dest="api_key", help="Quant Cloud API key (or INPUT_API_KEY).")
    parser.add_argument("--organization")
    parser.add_argument("--app-name", dest="app_name")
    parser.add_argument("--environment-name", dest="environment_name")
    parser.add_argument("--operation", choices=["create", "list", "download", "delete"])
    parser.add_argument("--type", dest="type", help="database or filesystem (default: database).")
    parser.add_argument("--backup-name", dest="backup_name", help="Description for a new backup.")
    parser.add_argument("--backup-id", dest="backup_id", help="Backup id, or 'latest'.")
    parser.add_argument("--older-than-days", dest="older_than_days")
    parser.add_argument("--sort-order", dest="sort_order")
    parser.add_argument("--filter-status", dest="filter_status")
    parser.add_argument("--wait", dest="wait", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--wait-interval", dest="wait_interval")
    parser.add_argument("--max-retries", dest="max_retries")
    parser.add_argument("--base-url", dest="base_url")
    parser.add_argument("--log-level", dest="log_level")
    parser.add_argument("--log-format", dest="log_format", choices=["console", "json"])
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = AppConfig()
    configure_logging(level=args.log_level or config.log_level, fmt=args.log_format or config.log_format)

    output_path = _github_output_path()
    try:
        file_inputs = load_inputs_file(args.inputs_file) if args.inputs_file else {}
        cli_inputs = {
            name: value
            for name, value in vars(args).items()
            if name not in {"inputs_file", "log_level", "log_format"}
        }
        raw = merge_inputs(load_action_inputs(), file_inputs, cli_inputs)

        request = validate_request(raw)
        api_key = str(raw.get("api_key") or "").strip()
        if not api_key:
            raise ConfigurationError("Input required and not supplied: api_key")

        base_url = str(raw.get("base_url") or config.base_url)
        with QuantCloudClient(
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=config.http_timeout_seconds,
        ) as client:
            result = BackupOrchestrator(client=client, base_url=base_url).run(request)
    except (BackupActionError, BackupApiError, ConfigurationError) as error:
        message = failure_message(error)
        logger.error("Backup action failed", error=message, error_type=error.__class__.__name__)
        write_outputs({"success": "false", "error_message": message}, output_path)
        return 1

    write_outputs(map_outputs(result), output_path)
    logger.info("Backup action finished", operation=request.operation)
    return 0


def _github_output_path() -> Path | None:
    value = os.getenv("GITHUB_OUTPUT", "").strip()
    return Path(value) if value else None
