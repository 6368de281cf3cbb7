"""
talos_hyperv/cli/common.py

Shared plumbing for the lifecycle CLIs: common arguments, logging setup,
construction of the lifecycle from settings, and the exit-code policy.

Exit codes:
  0  success, success with warnings, or operator abort
  1  fatal error
  2  destroy finished with per-VM failures
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import yaml

from talos_hyperv.deployment.lifecycle import NodeLifecycle
from talos_hyperv.errors import DestroyError, TalosHyperVError, UserAbort
from talos_hyperv.models.cluster import ClusterSettings
from talos_hyperv.models.report import OperationReport
from talos_hyperv.secrets.artifacts import ClusterArtifacts
from talos_hyperv.utils.async_command_runner import CommandError, require_tools
from talos_hyperv.utils.hyperv import HyperVProvider
from talos_hyperv.utils.k8s import KubeClient
from talos_hyperv.utils.talosctl import TalosClient

logger = logging.getLogger(__name__)


def build_parser(prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        "--config", default=None, help="YAML settings file (env TALOS_HV_* also applies)."
    )
    parser.add_argument("--cluster-name", default=None, help="Override cluster_name.")
    parser.add_argument("--output-dir", default=None, help="Override the credential directory.")
    parser.add_argument(
        "--powershell",
        default="powershell.exe",
        help="PowerShell executable used for Hyper-V cmdlets.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_settings(args: argparse.Namespace) -> ClusterSettings:
    try:
        settings = ClusterSettings.from_yaml_file(args.config)
    except (ValueError, OSError, yaml.YAMLError) as exc:
        print(f"ERROR: invalid settings: {exc}", file=sys.stderr)
        sys.exit(1)
    overrides = {
        key: value
        for key, value in (
            ("cluster_name", args.cluster_name),
            ("output_dir", args.output_dir),
        )
        if value is not None
    }
    if not overrides:
        return settings
    return ClusterSettings(**{**settings.model_dump(), **overrides})


def build_lifecycle(
    settings: ClusterSettings,
    powershell: str,
    cancel: Optional[asyncio.Event] = None,
    tools: Optional[List[str]] = None,
) -> NodeLifecycle:
    require_tools(tools if tools is not None else [powershell, "talosctl", "kubectl"])
    artifacts = ClusterArtifacts(settings.output_dir)
    return NodeLifecycle(
        settings,
        HyperVProvider(executable=powershell),
        TalosClient(artifacts.talosconfig),
        KubeClient(artifacts.kubeconfig),
        artifacts=artifacts,
        prompt=_interruptible_input,
        cancel=cancel,
    )


def _install_cancel_handlers(
    cancel: asyncio.Event, task: Optional["asyncio.Task[Any]"]
) -> Dict[int, Any]:
    """
    Route SIGINT/SIGTERM to the running operation.

    The first signal sets `cancel` for pollers and cancels `task`, which
    interrupts whatever step is in flight (subprocesses are killed by the
    runner). SIGINT then reverts to the default handler, so a second Ctrl+C
    raises KeyboardInterrupt immediately.

    Returns:
        The handlers that were replaced, for the caller to restore.
    """
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int, frame: Any) -> None:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        logger.warning("Received %s, cancelling", signal.Signals(signum).name)
        loop.call_soon_threadsafe(cancel.set)
        if task is not None:
            loop.call_soon_threadsafe(task.cancel)

    previous: Dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _on_signal)
    return previous


def _interruptible_input(question: str) -> str:
    """input() with Ctrl+C raising KeyboardInterrupt while it blocks."""
    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, signal.default_int_handler)
    try:
        return input(question)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def run_operation(
    operation: Callable[[asyncio.Event], Awaitable[OperationReport]],
) -> int:
    """Run one lifecycle operation, print its summary, and map the outcome to an exit code."""

    async def _main() -> OperationReport:
        cancel = asyncio.Event()
        previous = _install_cancel_handlers(cancel, asyncio.current_task())
        try:
            return await operation(cancel)
        finally:
            for sig, handler in previous.items():
                if handler is not None:
                    signal.signal(sig, handler)

    try:
        report = asyncio.run(_main())
    except UserAbort as exc:
        print(str(exc))
        return 0
    except DestroyError as exc:
        if exc.report is not None:
            print(exc.report.summary())
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    except (TalosHyperVError, CommandError, aiohttp.ClientError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except (asyncio.CancelledError, KeyboardInterrupt):
        print("ERROR: operation cancelled; inspect or destroy any partially created VMs.", file=sys.stderr)
        return 1

    print(report.summary())
    return 0
