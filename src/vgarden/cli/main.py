"""
vgarden command line interface.

    vgarden reconcile --imports imports.yaml --namespace garden --handle-namespace
    vgarden delete --imports imports.yaml --yes
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
from typing import Sequence

import structlog

from vgarden import __version__
from vgarden.cli import ux
from vgarden.cli.progress import RichProgressReporter
from vgarden.config.imports import load_imports
from vgarden.config.settings import Settings, get_settings
from vgarden.core.errors import ExitCode, main_with_error_handling
from vgarden.flow import RunResult
from vgarden.logging import configure_logging
from vgarden.reconcile.kubernetes import KubernetesResourceStore
from vgarden.virtualgarden import Operation

logger = structlog.get_logger()

COMMANDS = ("reconcile", "delete")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vgarden", description="Deploy and delete a virtual garden in a hosting cluster"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    for command, help_text in (
        ("reconcile", "Deploy or update the virtual garden"),
        ("delete", "Delete the virtual garden"),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("--imports", help="Path to the imports YAML file", default=None)
        sub.add_argument("--namespace", help="Namespace in the hosting cluster", default=None)
        sub.add_argument(
            "--handle-namespace",
            action="store_true",
            default=None,
            help="Create the namespace on reconcile and remove it on delete",
        )
        sub.add_argument(
            "--max-concurrency",
            type=int,
            default=None,
            help="Maximum number of tasks running at the same time",
        )
        sub.add_argument("--kubeconfig", help="Path to the hosting cluster kubeconfig", default=None)
        sub.add_argument("--context", help="Kubeconfig context", default=None)
        sub.add_argument("--log-level", default=None, help="Log level (default: INFO)")
        sub.add_argument(
            "--log-format", choices=["json", "console"], default=None, help="Log output format"
        )
        if command == "delete":
            sub.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {
        "imports_path": args.imports,
        "namespace": args.namespace,
        "handle_namespace": args.handle_namespace,
        "max_concurrency": args.max_concurrency,
        "kubeconfig": args.kubeconfig,
        "kube_context": args.context,
        "log_level": args.log_level,
        "log_format": args.log_format,
    }
    return settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})


async def _execute(operation: Operation, command: str) -> RunResult:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not supported on every platform; without a handler Ctrl-C interrupts the run.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, cancel_event.set)
            installed.append(sig)
    try:
        if command == "reconcile":
            return await operation.reconcile(cancel_event)
        return await operation.delete(cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _print_summary(result: RunResult) -> None:
    rows = []
    for name, outcome in result.outcomes.items():
        detail = str(outcome.error) if outcome.error else ""
        rows.append([name, outcome.status.value, f"{outcome.duration_seconds:.2f}s", detail])
    ux.print_table(result.graph_name, ["Task", "Status", "Duration", "Error"], rows)


def run_command(command: str, args: argparse.Namespace) -> int:
    settings = _apply_overrides(get_settings(), args)
    configure_logging(settings.log_level, json=settings.log_format == "json")

    imports = load_imports(settings.imports_path)
    namespace = args.namespace or imports.hosting_cluster.namespace or settings.namespace

    if command == "delete" and not getattr(args, "yes", False):
        if not ux.confirm(f"Delete the virtual garden in namespace {namespace!r}?", default=True):
            ux.warning("Aborted")
            return ExitCode.SUCCESS

    operation = Operation(
        store=KubernetesResourceStore(kubeconfig=settings.kubeconfig, context=settings.kube_context),
        namespace=namespace,
        imports=imports,
        handle_namespace=settings.handle_namespace,
        progress_reporter=RichProgressReporter(),
        max_concurrency=settings.max_concurrency,
    )

    ux.header(f"vgarden {command} ({namespace})")
    result = asyncio.run(_execute(operation, command))
    _print_summary(result)
    result.raise_for_status()

    ux.success(f"{result.graph_name} finished in {result.duration_seconds:.1f}s")
    return ExitCode.SUCCESS


@main_with_error_handling()
def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return 1

    return run_command(args.command, args)


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    raise SystemExit(main())
