"""
Sync entry point.

Loads configuration, configures logging, and runs a sync pass or a request to
join a team. Meant to be run by hand or from cron with ``--unattended``.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID

import structlog

from .api import ApiClient
from .config import DEFAULT_CONFIG_PATH, FluidkeysConfig, load_config
from .database import Database
from .errors import FluidkeysError
from .fingerprint import Fingerprint
from .gpg import GnuPG
from .metrics import MetricsCollector
from .sync import SyncContext, SyncResult, TeamSync, apply_to_join


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL[level]
        ),
    )


def build_context(config: FluidkeysConfig, api: ApiClient) -> SyncContext:
    gpg = GnuPG(binary=config.gpg.binary, homedir=config.gpg.homedir)
    return SyncContext(
        fluidkeys_dir=config.home.path,
        db=Database(config.home.path),
        api=api,
        engine=gpg,
        keyring=gpg,
        metrics=MetricsCollector(),
        fetch_interval=config.sync.fetch_interval,
        request_expiry=config.sync.request_expiry,
    )


def _api_client(config: FluidkeysConfig) -> ApiClient:
    return ApiClient(
        base_url=config.api.resolved_url,
        verify_tls=config.api.verify_tls,
        request_timeout=config.api.request_timeout_seconds,
    )


async def run_sync(config: FluidkeysConfig, unattended: bool) -> SyncResult:
    async with _api_client(config) as api:
        ctx = build_context(config, api)
        result = await TeamSync(ctx).run(unattended=unattended)

    if config.metrics.textfile:
        ctx.metrics.write_textfile(config.metrics.textfile)
    return result


async def run_apply(config: FluidkeysConfig, team_uuid: UUID, key: Fingerprint, email: str | None) -> None:
    async with _api_client(config) as api:
        ctx = build_context(config, api)
        await apply_to_join(ctx, team_uuid, key, email=email)


def _parse_fingerprint(text: str) -> Fingerprint:
    try:
        return Fingerprint.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fk-sync", description="Fluidkeys team sync")
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH} if it exists)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Fetch team rosters and keys, follow up requests")
    sync.add_argument(
        "--unattended",
        action="store_true",
        help="Running from a scheduler: skip anything fetched in the last day",
    )

    apply = commands.add_parser("apply", help="Request to join a team")
    apply.add_argument("team_uuid", type=UUID, help="UUID of the team to join")
    apply.add_argument("--key", required=True, type=_parse_fingerprint, help="Fingerprint of your key")
    apply.add_argument("--email", default=None, help="Team email (default: the key's first email)")
    return parser


def _load(path: str | None) -> FluidkeysConfig:
    if path is None:
        default = Path(DEFAULT_CONFIG_PATH).expanduser()
        if not default.exists():
            return FluidkeysConfig()
        path = str(default)
    return load_config(path)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = _load(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("main.config_loaded", config_path=args.config, fluidkeys_dir=str(config.home.path))

    if args.command == "apply":
        try:
            asyncio.run(run_apply(config, args.team_uuid, args.key, args.email))
        except FluidkeysError as exc:
            log.error("main.apply_failed", error=str(exc))
            return 1
        return 0

    try:
        result = asyncio.run(run_sync(config, args.unattended))
    except FluidkeysError as exc:
        log.error("main.sync_failed", error=str(exc))
        return 1

    for error in result.errors:
        log.error("main.sync_error", item=error.item, error=str(error.error))
    for request in result.awaiting_approval:
        log.info("main.awaiting_approval", team=request.team_name)
    for request in result.expired:
        log.warning("main.request_expired", team=request.team_name, hint="apply to join again")
    return 0 if result.ok else 1


def run() -> None:
    """CLI entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
