import argparse
import importlib
from typing import Iterable

from racky.queue.consumer import HandlerRegistry
from racky.queue.topology import all_queue_names
from racky.utils.logging import log_cleaner, logger


def load_handlers(registry: HandlerRegistry, modules: Iterable[str]) -> HandlerRegistry:
    """
    Import each handler module and let it register its job handlers.

    A handler module exposes ``register_handlers(registry)``.
    """
    for name in modules:
        module = importlib.import_module(name)
        register = getattr(module, "register_handlers", None)
        if register is None:
            raise ValueError(f"Handler module {name} has no register_handlers(registry)")
        register(registry)
        logger.log("WORKER", f"Loaded job handlers from {name}")
    return registry


def _queue_list(value: str) -> list[str]:
    queues = [q.strip() for q in value.split(",") if q.strip()]
    unknown = [q for q in queues if q not in all_queue_names()]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"Unknown queues: {', '.join(unknown)}. Allowed: {', '.join(all_queue_names())}"
        )
    return queues


def handle_args(argv: list[str] | None = None):
    """
    Parse CLI arguments.

    ``--clean_logs`` is performed immediately and exits. Otherwise the parsed
    namespace is returned with ``command`` set to one of ``api``, ``worker``,
    ``monitor``, ``sweep`` or ``migrate`` (``api`` when omitted).
    """
    parser = argparse.ArgumentParser(prog="racky")
    parser.add_argument(
        "--clean_logs",
        action="store_true",
        help="Clean old logs.",
    )
    parser.add_argument(
        "--handlers",
        action="append",
        default=[],
        metavar="MODULE",
        help="Module exposing register_handlers(registry). May be repeated.",
    )

    subparsers = parser.add_subparsers(dest="command")

    api = subparsers.add_parser("api", help="Run the HTTP API (default)")
    api.add_argument(
        "-p",
        "--port",
        type=int,
        default=8080,
        help="Port to run the server on (default: 8080)",
    )
    api.add_argument("--host", default="0.0.0.0", help="Interface to bind (default: 0.0.0.0)")

    worker = subparsers.add_parser("worker", help="Consume jobs from the queues")
    worker.add_argument(
        "-q",
        "--queues",
        type=_queue_list,
        default=None,
        help="Comma separated queues to consume (default: queues of the registered handlers)",
    )

    subparsers.add_parser("monitor", help="Run the queue health monitor")

    sweep = subparsers.add_parser("sweep", help="Run the stale job sweeper")
    sweep.add_argument("--once", action="store_true", help="Run a single sweep and exit.")

    subparsers.add_parser("migrate", help="Upgrade the database schema and exit")

    args = parser.parse_args(argv)

    if args.clean_logs:
        log_cleaner()
        logger.info("Cleaned old logs.")
        exit(0)

    if args.command is None:
        args.command = "api"
        args.port = 8080
        args.host = "0.0.0.0"

    return args
