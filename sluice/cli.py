"""Command-line helpers for Sluice storage, planning, refresh and export status."""

from __future__ import annotations

import argparse
import asyncio
import os
import typing as typ
from pathlib import Path

import msgspec
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from sluice.common.time import parse_aware_iso, utcnow
from sluice.exports import (
    ExportConfig,
    ExportError,
    ExportJobManager,
    ExportJobStore,
    ExtractionId,
    FilesystemObjectStore,
    JobNotFoundError,
    SqlAlchemyQueryBackend,
    init_export_storage,
)
from sluice.logging import configure_logging, get_logger, log_warning
from sluice.planner import (
    PlannerConfig,
    PlatformApiClient,
    ScheduleStore,
    init_planner_storage,
    plan_due_extractions,
)
from sluice.refresh import (
    RefreshConfig,
    RefreshStateMachine,
    RefreshStore,
    init_refresh_storage,
    refresh_model_from_name,
)

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = get_logger(__name__)


def _print_json(value: object) -> None:
    print(msgspec.json.encode(value).decode("utf-8"))


async def _utc_resolver(platform: str, owner_id: str) -> str:
    return "UTC"


async def _init_db(engine: AsyncEngine, args: argparse.Namespace) -> int:
    await init_refresh_storage(engine)
    await init_planner_storage(engine)
    await init_export_storage(engine)
    print(f"initialised sluice tables at {args.database_url}")
    return 0


async def _plan(engine: AsyncEngine, args: argparse.Namespace) -> int:
    now = parse_aware_iso(args.as_of, field="--as-of") or utcnow()
    schedules = ScheduleStore(async_sessionmaker(engine, expire_on_commit=False))
    entries = await schedules.list_for_platforms(args.platform)
    if not os.environ.get("SLUICE_PLATFORM_API_TOKEN", "").strip():
        log_warning(
            logger, "SLUICE_PLATFORM_API_TOKEN is not set; planning in UTC"
        )
        due = await plan_due_extractions(now, entries, _utc_resolver)
    else:
        client = PlatformApiClient(PlannerConfig.from_env())
        try:
            due = await plan_due_extractions(now, entries, client)
        finally:
            await client.aclose()
    _print_json(due)
    return 0


async def _refresh_status(engine: AsyncEngine, args: argparse.Namespace) -> int:
    machine = RefreshStateMachine(
        RefreshStore(async_sessionmaker(engine, expire_on_commit=False)),
        config=RefreshConfig.from_env(),
    )
    model = refresh_model_from_name(
        args.model,
        args.installation_class,
        nightly_timeout_minutes=args.nightly_timeout_minutes,
    )
    _print_json(await machine.get_effective_refresh(args.platform, model))
    return 0


def _export_manager(engine: AsyncEngine) -> ExportJobManager:
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    config = ExportConfig.from_env()
    return ExportJobManager(
        ExportJobStore(session_factory),
        RefreshStateMachine(
            RefreshStore(session_factory), config=RefreshConfig.from_env()
        ),
        SqlAlchemyQueryBackend(engine),
        FilesystemObjectStore(config.artifact_root or Path.cwd()),
        config=config,
    )


async def _poll(engine: AsyncEngine, args: argparse.Namespace) -> int:
    manager = _export_manager(engine)
    try:
        job_id = ExtractionId(args.report_id, args.execution_id)
        view = await manager.poll_export(job_id)
    except JobNotFoundError as exc:
        print(str(exc))
        return 1
    except ExportError as exc:
        print(f"Invalid export job id: {exc}")
        return 1
    _print_json(view)
    return 0


async def _resume(engine: AsyncEngine, args: argparse.Namespace) -> int:
    manager = _export_manager(engine)
    try:
        job_id = ExtractionId(args.report_id, args.execution_id)
        view = await manager.resume_deferred_export(job_id)
    except JobNotFoundError as exc:
        print(str(exc))
        return 1
    except ExportError as exc:
        print(f"Invalid export job id: {exc}")
        return 1
    _print_json(view)
    return 0


_COMMANDS: dict[
    str, typ.Callable[[AsyncEngine, argparse.Namespace], typ.Awaitable[int]]
] = {
    "init-db": _init_db,
    "plan": _plan,
    "refresh-status": _refresh_status,
    "poll": _poll,
    "resume": _resume,
}


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("database_url", help="SQLAlchemy URL of the Sluice database")
    common.add_argument(
        "--log-level",
        default=os.environ.get("SLUICE_LOG_LEVEL", "INFO"),
        help="femtologging level (default: SLUICE_LOG_LEVEL or INFO)",
    )

    parser = argparse.ArgumentParser(prog="sluice", description=__doc__)
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", parents=[common], help="Create all tables")

    plan = commands.add_parser(
        "plan", parents=[common], help="Print the reports due now as JSON"
    )
    plan.add_argument(
        "--platform",
        action="append",
        required=True,
        help="Tenant to plan for; repeat for several tenants",
    )
    plan.add_argument(
        "--as-of", default=None, help="Aware ISO timestamp to plan for"
    )

    status = commands.add_parser(
        "refresh-status",
        parents=[common],
        help="Print a tenant's effective refresh as JSON",
    )
    status.add_argument("platform", help="Tenant identifier")
    status.add_argument(
        "--model",
        choices=("legacy", "managed", "warehouse"),
        default="legacy",
        help="Refresh model of the tenant",
    )
    status.add_argument(
        "--installation-class",
        default="",
        help="Installation classification for managed tenants",
    )
    status.add_argument(
        "--nightly-timeout-minutes",
        type=int,
        default=None,
        help="Nightly refresh timeout for legacy tenants",
    )

    for name, summary in (
        ("poll", "Print an export job's status as JSON"),
        ("resume", "Resume a deferred export job"),
    ):
        job = commands.add_parser(name, parents=[common], help=summary)
        job.add_argument("report_id", help="Report UUID")
        job.add_argument("execution_id", help="Execution UUID")

    return parser


async def _run(args: argparse.Namespace) -> int:
    engine = create_async_engine(args.database_url)
    try:
        return await _COMMANDS[args.command](engine, args)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    """Run a Sluice command.

    Parameters
    ----------
    argv : list[str] | None, optional
        Command-line arguments. ``None`` defaults to ``sys.argv``.

    Returns
    -------
    int
        Exit code: 0 on success, 1 when the requested job does not exist or
        its id is invalid.

    """
    args = _build_parser().parse_args(argv)
    level, invalid = configure_logging(args.log_level)
    if invalid:
        log_warning(
            logger, "Invalid log level %r; using %s", args.log_level, level
        )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
