"""Command-line interface.

Every command prints a JSON envelope. Exit status: 0 on success, 2 when the
input or the caller's permissions were rejected, 1 on operational failure.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from pydantic import ValidationError

from renderfleet.config import Settings, get_settings
from renderfleet.constants.error_codes import is_validation_error
from renderfleet.exceptions import InputValidationError, InvalidConfigError, RenderfleetError
from renderfleet.middleware.request_context import RequestContext, create_request_context, envelope
from renderfleet.schemas.render import RenderJobResponse, RenderRequest
from renderfleet.schemas.worker import NetworkConfig, WorkerConfig

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2


def _emit(context: RequestContext, data: Any = None, error: RenderfleetError | None = None) -> None:
    body = envelope(context, data, error.to_error_info() if error else None)
    print(json.dumps(body.model_dump(mode="json", exclude_none=True), indent=2))


def _exit_code(error: RenderfleetError) -> int:
    return EXIT_VALIDATION if is_validation_error(error.code) else EXIT_FAILURE


def _json_arg(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="renderfleet", description="Fan-out serverless render orchestrator")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    commands = parser.add_subparsers(dest="command", required=True)

    # workers
    workers = commands.add_parser("workers", help="Manage render workers").add_subparsers(
        dest="action", required=True
    )
    deploy = workers.add_parser("deploy", help="Deploy a worker (idempotent)")
    deploy.add_argument("--version", dest="worker_version", help="Worker image version")
    deploy.add_argument("--memory", help="Memory, e.g. 2Gi")
    deploy.add_argument("--cpu", help="vCPU count, e.g. 1 or 0.5")
    deploy.add_argument("--timeout", type=int, dest="timeout_seconds", help="Per-invocation timeout (seconds)")
    deploy.add_argument("--region")
    deploy.add_argument("--enhanced-monitoring", action="store_true")
    deploy.add_argument("--vpc-connector")
    deploy.add_argument("--egress", choices=["all-traffic", "private-ranges-only"])
    deploy.add_argument("--service-account", help="Custom execution identity")
    deploy.add_argument("--skip-permission-check", action="store_true")
    for name in ("list", "delete-all"):
        sub = workers.add_parser(name)
        sub.add_argument("--region")
    delete_all = workers.choices["delete-all"]
    delete_all.add_argument("--yes", action="store_true", help="Confirm deleting every worker in the region")
    delete = workers.add_parser("delete")
    delete.add_argument("name")
    delete.add_argument("--region")

    # sites
    sites = commands.add_parser("sites", help="Manage site bundles").add_subparsers(dest="action", required=True)
    site_deploy = sites.add_parser("deploy", help="Upload a bundle directory")
    site_deploy.add_argument("bundle_dir")
    site_deploy.add_argument("--site-name")
    site_deploy.add_argument("--region")
    site_list = sites.add_parser("list")
    site_list.add_argument("--region")
    site_delete = sites.add_parser("delete")
    site_delete.add_argument("site_id")
    site_delete.add_argument("--region")

    # render
    render = commands.add_parser("render", help="Render compositions").add_subparsers(dest="action", required=True)
    start = render.add_parser("start", help="Render a composition and wait for the result")
    start.add_argument("--site", required=True, help="Site id or serve URL")
    start.add_argument("--composition", required=True)
    start.add_argument("--duration-ms", type=int, required=True)
    start.add_argument("--fps", type=int, default=30)
    start.add_argument("--region")
    start.add_argument("--props", type=_json_arg, default={}, help="Input props as a JSON object")
    start.add_argument("--codec-extension", dest="output_extension")
    start.add_argument("--chunk-duration-s", type=int)
    start.add_argument("--concurrency", type=int, dest="concurrency_ceiling")
    start.add_argument("--parallelism", type=int, dest="requested_parallelism")
    start.add_argument("--max-attempts", type=int)
    start.add_argument("--job-timeout-s", type=int)
    start.add_argument("--version", dest="worker_version")
    start.add_argument("--memory")
    start.add_argument("--cpu")
    start.add_argument("--timeout", type=int, dest="timeout_seconds")
    start.add_argument("--webhook-url")
    start.add_argument("--webhook-data", type=_json_arg)
    start.add_argument("--skip-permission-check", action="store_true")
    progress = render.add_parser("progress", help="Show a render job's progress")
    progress.add_argument("job_id")

    # permissions
    perms = commands.add_parser("permissions", help="Simulate required permissions").add_subparsers(
        dest="action", required=True
    )
    validate = perms.add_parser("validate")
    validate.add_argument("--operation", help="Limit the check to one operation")

    # logs
    logs = commands.add_parser("logs", help="Show a worker's logs")
    logs.add_argument("worker_name")
    logs.add_argument("--job-id")
    logs.add_argument("--limit", type=int, default=50)
    logs.add_argument("--region")

    return parser


async def _workers(args: argparse.Namespace, settings: Settings) -> Any:
    from renderfleet.api.deps import get_permission_validator, get_worker_manager

    manager = get_worker_manager()
    if args.action == "deploy":
        network = None
        if args.vpc_connector or args.egress:
            network = NetworkConfig(vpc_connector=args.vpc_connector, egress=args.egress)
        config = WorkerConfig(
            version=args.worker_version or settings.worker_default_version,
            memory=args.memory or settings.worker_default_memory,
            cpu=args.cpu or settings.worker_default_cpu,
            timeout_seconds=args.timeout_seconds or settings.worker_default_timeout_seconds,
            region=args.region,
            enhanced_monitoring=args.enhanced_monitoring,
            network=network,
            service_account=args.service_account,
        )
        if not args.skip_permission_check:
            await get_permission_validator().ensure_permissions("workers.deploy")
        return await manager.ensure_worker(config)
    if args.action == "list":
        return await manager.list_workers(args.region)
    if args.action == "delete":
        await manager.delete_worker(args.name, args.region)
        return {"name": args.name, "deleted": True}
    if not args.yes:
        raise InvalidConfigError("Refusing to delete every worker without --yes", field="yes")
    return await manager.delete_all_workers(args.region)


async def _sites(args: argparse.Namespace) -> Any:
    from renderfleet.api.deps import get_site_service

    sites = get_site_service()
    if args.action == "deploy":
        return await asyncio.to_thread(sites.deploy_site, args.bundle_dir, args.region, args.site_name)
    if args.action == "list":
        return await asyncio.to_thread(sites.list_sites, args.region)
    return await asyncio.to_thread(sites.delete_site, args.site_id, args.region)


async def _render(args: argparse.Namespace) -> tuple[Any, RenderfleetError | None]:
    from renderfleet.api.deps import get_job_store, get_render_service
    from renderfleet.models.database import init_db

    if args.action == "progress":
        await init_db()
        record = await get_job_store().get(args.job_id)
        return RenderJobResponse.model_validate(record), None

    # Reject bad input before touching the database
    request = RenderRequest(
        site=args.site,
        composition=args.composition,
        duration_ms=args.duration_ms,
        fps=args.fps,
        region=args.region,
        input_props=args.props,
        output_extension=args.output_extension,
        chunk_duration_s=args.chunk_duration_s,
        concurrency_ceiling=args.concurrency_ceiling,
        requested_parallelism=args.requested_parallelism,
        max_attempts=args.max_attempts,
        job_timeout_s=args.job_timeout_s,
        version=args.worker_version,
        memory=args.memory,
        cpu=args.cpu,
        timeout_seconds=args.timeout_seconds,
        webhook_url=args.webhook_url,
        webhook_data=args.webhook_data,
    )
    await init_db()
    service = get_render_service()
    if args.skip_permission_check:
        service.validator = None
    outcome = await service.start_render(request)
    return outcome.to_dict(), outcome.result.error


async def _permissions(args: argparse.Namespace) -> Any:
    from renderfleet.api.deps import get_permission_validator

    report = await get_permission_validator().validate(args.operation)
    return {
        "operation": args.operation,
        "ok": report.ok,
        "missing": report.missing,
        "checks": [c.model_dump() for c in report.checks],
    }


async def _logs(args: argparse.Namespace, settings: Settings) -> Any:
    from renderfleet.api.deps import get_log_service

    logs = get_log_service()
    entries = await logs.fetch_worker_logs(args.worker_name, args.job_id, args.limit)
    region = args.region or settings.default_region
    return {"url": logs.logs_url(region, args.worker_name, args.job_id), "entries": entries}


async def run_command(args: argparse.Namespace, settings: Settings) -> tuple[Any, RenderfleetError | None]:
    """Run a parsed command; returns ``(data, error)`` for non-raising failures."""
    if args.command == "workers":
        return await _workers(args, settings), None
    if args.command == "sites":
        return await _sites(args), None
    if args.command == "render":
        return await _render(args)
    if args.command == "permissions":
        return await _permissions(args), None
    return await _logs(args, settings), None


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    settings = get_settings()
    context = create_request_context()

    try:
        data, error = asyncio.run(run_command(args, settings))
    except RenderfleetError as e:
        _emit(context, error=e)
        return _exit_code(e)
    except ValidationError as e:
        error = InputValidationError.from_errors(e.errors())
        _emit(context, error=error)
        return _exit_code(error)
    except Exception as e:
        logger.exception(f"[CLI] Unhandled error in {args.command}: {e}")
        error = RenderfleetError(f"Internal error: {e}")
        _emit(context, error=error)
        return EXIT_FAILURE

    _emit(context, data, error)
    if error is not None:
        return _exit_code(error)
    if args.command == "permissions" and data["missing"]:
        return EXIT_VALIDATION
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
