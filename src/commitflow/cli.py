"""Command line entry point: ``commitflow commit`` and ``commitflow serve``."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from pathlib import Path

from commitflow.client.controller import EXIT_CODES, ClientController
from commitflow.client.presenter import TerminalPresenter
from commitflow.config import LOG_FORMAT, ClientSettings, ServerSettings
from commitflow.models.events import Stage
from commitflow.models.workflow import WorkflowRequest

logger = logging.getLogger(__name__)


def find_repository_root(path: Path) -> Path | None:
    """Return the nearest directory at or above ``path`` holding ``.git``."""
    for candidate in (path, *path.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commitflow",
        description="Stage, describe, commit and push changes through an orchestration host",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    commit = subparsers.add_parser("commit", help="Run one commit workflow for a repository")
    commit.add_argument(
        "repository",
        nargs="?",
        type=Path,
        default=Path("."),
        help="Repository path (default: current directory)",
    )
    commit.add_argument("--server", metavar="HOST:PORT", help="Orchestration host address")
    commit.add_argument("--hint", metavar="TEXT", help="Extra context for the message generator")
    commit.add_argument("--prefix", metavar="TEXT", help="Prefix prepended to the commit message")
    commit.add_argument(
        "--skip-staging",
        action="store_true",
        help="Commit only what is already staged",
    )
    commit.add_argument(
        "--timeout-seconds",
        type=float,
        metavar="SECONDS",
        help="Give up when no progress event arrives within this window",
    )
    commit.add_argument("--verbose", action="store_true", help="Log client activity to stderr")

    serve = subparsers.add_parser("serve", help="Run the orchestration host")
    serve.add_argument("--address", metavar="HOST:PORT", help="Listen address")
    return parser


def _client_settings(args: argparse.Namespace) -> ClientSettings:
    settings = ClientSettings.from_env()
    overrides: dict[str, object] = {}
    if args.server:
        overrides["address"] = args.server
    if args.timeout_seconds is not None:
        overrides["event_timeout"] = args.timeout_seconds
    return dataclasses.replace(settings, **overrides)


async def _commit(args: argparse.Namespace) -> int:
    repo_root = find_repository_root(args.repository.resolve())
    if repo_root is None:
        print(f"{args.repository} is not inside a git repository", file=sys.stderr)
        return EXIT_CODES[Stage.DETECTING]

    controller = ClientController(TerminalPresenter(), _client_settings(args))
    request = WorkflowRequest(
        repository_path=repo_root,
        hint=args.hint,
        message_prefix=args.prefix,
        skip_staging=args.skip_staging,
    )

    pending: set[asyncio.Task[None]] = set()

    async def _request_cancel() -> None:
        if await controller.cancel():
            print("Cancellation requested", file=sys.stderr)
        else:
            print("Cancellation rejected: the commit has already started", file=sys.stderr)

    def _on_interrupt() -> None:
        task = asyncio.ensure_future(_request_cancel())
        pending.add(task)
        task.add_done_callback(pending.discard)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except NotImplementedError:
        logger.debug("signal handlers unsupported; Ctrl-C will abort the client")
    try:
        return await controller.run(request)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def _serve(args: argparse.Namespace) -> int:
    from commitflow.api.app import run

    settings = ServerSettings.from_env()
    if args.address:
        settings = dataclasses.replace(settings, address=args.address)
    run(settings)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        return _serve(args)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format=LOG_FORMAT)
    return asyncio.run(_commit(args))


if __name__ == "__main__":
    raise SystemExit(main())
