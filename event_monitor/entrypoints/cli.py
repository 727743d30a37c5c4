from __future__ import annotations

import argparse

from event_monitor.domain.models import MONITORED_CATEGORIES, Category
from event_monitor.entrypoints.commands import (
    run_broadcast,
    run_check,
    run_manual_poll,
    run_service,
)
from event_monitor.entrypoints.runtime_builder import build_runtime, log_startup
from event_monitor.entrypoints.service_loop import run_loop


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Business event monitor and Telegram dispatcher")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the monitor daemon (default)")
    subparsers.add_parser(
        "broadcast",
        help="Send eligible advertisements to every active member once and print a report",
    )
    subparsers.add_parser("check", help="Run the preflight checks and print the result")

    poll_parser = subparsers.add_parser(
        "poll",
        help="Dispatch one category's events from the last hour",
    )
    poll_parser.add_argument(
        "--category",
        required=True,
        choices=[category.value for category in MONITORED_CATEGORIES],
        help="Category to check",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "run"

    if command == "broadcast":
        return run_broadcast(build_runtime_fn=build_runtime)
    if command == "check":
        return run_check(build_runtime_fn=build_runtime)
    if command == "poll":
        return run_manual_poll(Category(args.category), build_runtime_fn=build_runtime)

    return run_service(
        build_runtime_fn=build_runtime,
        log_startup_fn=log_startup,
        run_loop_fn=run_loop,
    )


if __name__ == "__main__":
    raise SystemExit(main())
