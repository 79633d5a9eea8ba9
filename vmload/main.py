from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar

import aiohttp

from .control import DEFAULT_BASE_URL, ServiceAccount, VMControlClient, websocket_base_url
from .lifecycle import (
    DEFAULT_IMAGE,
    DEFAULT_NAME_PREFIX,
    LifecycleConfig,
    LifecycleExecutor,
    load_startup_script,
)
from .payload import DEFAULT_PAYLOAD_BYTES, MAX_PAYLOAD_BYTES
from .ramp.collector import AggregateResult, ResultCollector, summarize_durations
from .ramp.config import (
    DEFAULT_GRACEFUL_STOP_SECONDS,
    LoadTestSettings,
    default_ramp_profile,
    format_stages,
    parse_duration,
    parse_stages,
)
from .ramp.scheduler import RampScheduler
from .report import close_run_logger, configure_run_logger
from .tunnel import DEFAULT_PORT, DEFAULT_WAIT_SECONDS

LOGGER = logging.getLogger("vmload")

T = TypeVar("T")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="VM lifecycle load test")
    parser.add_argument("--base-url", help="Orchestration API base URL (BASE_URL)")
    parser.add_argument(
        "--ws-base-url",
        help="WebSocket base URL (WS_BASE_URL), derived from --base-url when omitted",
    )
    parser.add_argument(
        "--payload-bytes",
        type=int,
        help="Bytes sent through each port-forward tunnel (WS_BYTES)",
    )
    parser.add_argument(
        "--stages",
        help="Ramp stages as <duration>:<target>[,...], e.g. 30s:10,5m:2000 (VMLOAD_STAGES)",
    )
    parser.add_argument("--image", help="VM image to create (VMLOAD_IMAGE)")
    parser.add_argument("--port", type=int, help="Port forwarded inside the VM (VMLOAD_PORT)")
    parser.add_argument(
        "--wait",
        type=int,
        help="Seconds the server may hold the tunnel until the port is reachable (VMLOAD_WAIT_SECONDS)",
    )
    parser.add_argument(
        "--connect-timeout",
        help="Client-side bound on opening the tunnel (VMLOAD_CONNECT_TIMEOUT)",
    )
    parser.add_argument(
        "--idle-timeout",
        help="Fail a tunnel that receives nothing for this long; disabled by default (VMLOAD_IDLE_TIMEOUT)",
    )
    parser.add_argument(
        "--tunnel-after-failed-create",
        action="store_true",
        default=None,
        help="Still run the tunnel check when VM creation was rejected",
    )
    parser.add_argument("--name-prefix", help="Prefix for generated VM names (VMLOAD_NAME_PREFIX)")
    parser.add_argument(
        "--startup-script",
        help="File whose content is sent as the VM startup script (VMLOAD_STARTUP_SCRIPT)",
    )
    parser.add_argument(
        "--output-dir",
        help="Directory for CSV, JSON and chart artefacts (VMLOAD_OUTPUT_DIR)",
    )
    parser.add_argument(
        "--run-log-path",
        help="File receiving one summary per finished lifecycle (VMLOAD_RUN_LOG_PATH)",
    )
    parser.add_argument(
        "--run-log-append",
        action="store_true",
        default=None,
        help="Append to the run log instead of truncating it (VMLOAD_RUN_LOG_APPEND)",
    )
    parser.add_argument(
        "--graceful-stop",
        help="How long running lifecycles may finish after the last stage or a stop request (VMLOAD_GRACEFUL_STOP)",
    )
    parser.add_argument("--tick", type=float, help="Seconds between population adjustments")
    parser.add_argument("--log-level", help="Logging level (VMLOAD_LOG_LEVEL)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the resolved plan without creating any VM",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _from_env(
    env: Mapping[str, str],
    name: str,
    default: T,
    convert: Callable[[str], T],
) -> T:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return convert(raw)
    except ValueError:
        print(f"invalid {name} value {raw!r}; defaulting to {default!r}", file=sys.stderr)
        return default


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise ValueError("must be positive")
    return number


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def resolve_settings(
    args: argparse.Namespace,
    env: Optional[Mapping[str, str]] = None,
) -> LoadTestSettings:
    env = os.environ if env is None else env

    base_url = args.base_url or env.get("BASE_URL") or DEFAULT_BASE_URL
    ws_base_url = args.ws_base_url or env.get("WS_BASE_URL") or websocket_base_url(base_url)

    payload_size = args.payload_bytes
    if payload_size is None:
        payload_size = _from_env(env, "WS_BYTES", DEFAULT_PAYLOAD_BYTES, _positive_int)
    if not 0 < payload_size <= MAX_PAYLOAD_BYTES:
        raise ValueError(f"payload size must be within 1..{MAX_PAYLOAD_BYTES}, got {payload_size}")

    stages_value = args.stages or env.get("VMLOAD_STAGES")
    profile = parse_stages(stages_value) if stages_value else default_ramp_profile()

    if args.port is not None and args.port <= 0:
        raise ValueError(f"--port must be positive, got {args.port}")
    port = args.port if args.port is not None else _from_env(env, "VMLOAD_PORT", DEFAULT_PORT, _positive_int)
    if args.wait is not None and args.wait <= 0:
        raise ValueError(f"--wait must be positive, got {args.wait}")
    wait_seconds = (
        args.wait
        if args.wait is not None
        else _from_env(env, "VMLOAD_WAIT_SECONDS", DEFAULT_WAIT_SECONDS, _positive_int)
    )

    graceful_value = args.graceful_stop or env.get("VMLOAD_GRACEFUL_STOP")
    graceful_stop_seconds = (
        parse_duration(graceful_value) if graceful_value else DEFAULT_GRACEFUL_STOP_SECONDS
    )

    connect_value = args.connect_timeout or env.get("VMLOAD_CONNECT_TIMEOUT")
    connect_timeout = parse_duration(connect_value) if connect_value else None
    idle_value = args.idle_timeout or env.get("VMLOAD_IDLE_TIMEOUT")
    idle_timeout = parse_duration(idle_value) if idle_value else None

    tunnel_after_failed_create = args.tunnel_after_failed_create
    if tunnel_after_failed_create is None:
        tunnel_after_failed_create = _from_env(
            env, "VMLOAD_TUNNEL_AFTER_FAILED_CREATE", False, _truthy
        )

    script_value = args.startup_script or env.get("VMLOAD_STARTUP_SCRIPT")
    startup_script = load_startup_script(Path(script_value) if script_value else None)

    account_name = env.get("SERVICE_ACCOUNT_NAME")
    account_token = env.get("SERVICE_ACCOUNT_TOKEN")
    service_account = (
        ServiceAccount(account_name, account_token)
        if account_name and account_token
        else None
    )

    output_value = args.output_dir or env.get("VMLOAD_OUTPUT_DIR")
    run_log_value = args.run_log_path or env.get("VMLOAD_RUN_LOG_PATH")
    run_log_append = args.run_log_append
    if run_log_append is None:
        run_log_append = _from_env(env, "VMLOAD_RUN_LOG_APPEND", False, _truthy)

    lifecycle = LifecycleConfig(
        image=args.image or env.get("VMLOAD_IMAGE") or DEFAULT_IMAGE,
        startup_script=startup_script,
        payload_size=payload_size,
        port=port,
        wait_seconds=wait_seconds,
        connect_timeout=connect_timeout,
        idle_timeout=idle_timeout,
        tunnel_after_failed_create=tunnel_after_failed_create,
        name_prefix=args.name_prefix or env.get("VMLOAD_NAME_PREFIX") or DEFAULT_NAME_PREFIX,
    )

    return LoadTestSettings(
        profile=profile,
        lifecycle=lifecycle,
        base_url=base_url,
        ws_base_url=ws_base_url,
        service_account=service_account,
        tick_seconds=args.tick if args.tick and args.tick > 0 else 1.0,
        output_dir=Path(output_value) if output_value else None,
        run_log_path=Path(run_log_value) if run_log_value else None,
        run_log_append=run_log_append,
        graceful_stop_seconds=graceful_stop_seconds,
    )


async def run_load_test(
    settings: LoadTestSettings,
    collector: ResultCollector,
) -> AggregateResult:
    connector = aiohttp.TCPConnector(limit=0)
    async with aiohttp.ClientSession(connector=connector) as session:
        control = VMControlClient(
            session,
            base_url=settings.base_url,
            ws_base_url=settings.ws_base_url,
            service_account=settings.service_account,
        )
        executor = LifecycleExecutor(control, settings.lifecycle)
        scheduler = RampScheduler(
            settings.profile,
            executor.run,
            collector=collector,
            tick_seconds=settings.tick_seconds,
            graceful_stop_seconds=settings.graceful_stop_seconds,
        )

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, scheduler.stop)
            except (NotImplementedError, RuntimeError):
                pass

        try:
            return await scheduler.execute()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(signum)
                except (NotImplementedError, RuntimeError):
                    pass


def write_artefacts(
    output_dir: Path,
    collector: ResultCollector,
    result: AggregateResult,
    duration_s: float,
) -> dict[str, Any]:
    from .ramp.charts import render_ramp_chart

    output_dir.mkdir(parents=True, exist_ok=True)
    runs = collector.build_dataframe()
    population = collector.population_dataframe()

    runs_path = output_dir / "runs.csv"
    runs.to_csv(runs_path, index=False)
    population_path = output_dir / "population.csv"
    population.to_csv(population_path, index=False)
    chart_path = render_ramp_chart(population, runs, output_dir)

    summary = {
        "started": result.started,
        "passed": result.passed,
        "failed": result.failed,
        "failures_by_reason": result.failures_by_reason,
        "pass_rate": result.pass_rate,
        "duration_s": duration_s,
        "lifecycles_per_minute": result.finished / duration_s * 60.0 if duration_s > 0 else 0.0,
        "lifecycle_duration": summarize_durations(runs),
        "runs_csv": str(runs_path),
        "population_csv": str(population_path),
        "chart": str(chart_path),
    }
    summary_path = output_dir / "summary.json"
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    LOGGER.info("Load test summary written to %s", summary_path)
    return summary


def format_counter(counter: Mapping[str, int]) -> str:
    if not counter:
        return "<empty>"
    return ", ".join(f"{reason}={counter[reason]}" for reason in sorted(counter))


def _print_plan(settings: LoadTestSettings) -> None:
    lifecycle = settings.lifecycle
    print(f"Base URL: {settings.base_url}")
    print(f"WebSocket base URL: {settings.ws_base_url}")
    print(f"Stages: {format_stages(settings.profile.stages)}")
    print(
        f"  total={settings.profile.total_duration_seconds:g}s "
        f"peak={settings.profile.peak_population} virtual users"
    )
    print(
        f"Lifecycle: image={lifecycle.image} payload={lifecycle.payload_size}B "
        f"port={lifecycle.port} wait={lifecycle.wait_seconds}s "
        f"connect_timeout={lifecycle.effective_connect_timeout:g}s "
        f"idle_timeout={lifecycle.idle_timeout if lifecycle.idle_timeout is not None else 'disabled'} "
        f"tunnel_after_failed_create={lifecycle.tunnel_after_failed_create}"
    )
    print(f"Graceful stop: {settings.graceful_stop_seconds:g}s")
    print(f"Authentication: {'service account' if settings.service_account else 'none'}")


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.log_level or os.environ.get("VMLOAD_LOG_LEVEL", "INFO"))

    try:
        settings = resolve_settings(args)
    except (ValueError, OSError) as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.dry_run:
        _print_plan(settings)
        return 0

    run_logger = None
    if settings.run_log_path is not None:
        run_logger = configure_run_logger(settings.run_log_path, append=settings.run_log_append)
    collector = ResultCollector(run_logger=run_logger, keep_records=settings.output_dir is not None)

    started = time.monotonic()
    try:
        result = asyncio.run(run_load_test(settings, collector))
    finally:
        if run_logger is not None:
            close_run_logger(run_logger)
    duration_s = time.monotonic() - started

    if settings.output_dir is not None:
        write_artefacts(settings.output_dir, collector, result, duration_s)

    print("Lifecycle counts:")
    print(f"  started: {result.started}")
    print(f"  passed: {result.passed}")
    print(f"  failed: {result.failed}")

    if result.failed or result.finished == 0:
        print("\nLoad test status: FAILED", file=sys.stderr)
        print(f"  failures by reason: {format_counter(result.failures_by_reason)}", file=sys.stderr)
        if result.finished == 0:
            print("  no lifecycle finished", file=sys.stderr)
        return 1

    print("\nLoad test status: OK", file=sys.stderr)
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
