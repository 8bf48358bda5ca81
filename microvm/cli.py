"""CLI entry points for microvm-runner."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from microvm.config import default_config, parse_env
from microvm.constants import API_SOCKET_PATH, KERNEL_PATH, ROOTFS_PATH, WORK_ROOT
from microvm.exceptions import ManagerError
from microvm.host import HostCommands
from microvm.models import RunConfig
from microvm.pipeline import COMMAND_STAGES, Pipeline, RunLock, teardown
from microvm.utils import log

COMMANDS = {
    "prereqs": "Check prerequisites",
    "build": "Build rootfs with server + static assets",
    "kernel": "Download Linux kernel",
    "network": "Set up TAP network (requires root)",
    "run": "Launch Firecracker VM",
    "clean": "Clean up network, sockets and temporary files",
    "all": "Run all steps",
}


def show_config(cfg: RunConfig) -> None:
    """Print the resolved run configuration and the fixed host paths."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                print(f"    {sub_field.name}: {getattr(value, sub_field.name)}")
        else:
            print(f"  {field.name}: {value if value is not None else '<auto>'}")
    print(f"  kernel_path: {KERNEL_PATH}")
    print(f"  rootfs_path: {ROOTFS_PATH}")
    print(f"  work_root: {WORK_ROOT}")
    print(f"  api_socket: {API_SOCKET_PATH}")


def print_startup_banner(cfg: RunConfig, pid: int) -> None:
    """Print a visually distinct access-info banner after the guest starts."""
    link = cfg.link
    lines = [
        f"  microVM running (PID {pid})",
        f"  vCPUs: {cfg.vcpus} | Memory: {cfg.memory_mib} MiB | Rootfs: {cfg.rootfs_size_mb} MiB",
        f"  Guest:  {link.guest_cidr} via {link.device} (host {link.host_address})",
        f"  Server: http://{link.guest_address}:{cfg.service_port}",
        f"  API:    {API_SOCKET_PATH}",
    ]
    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def run_clean(cfg: RunConfig) -> int:
    try:
        teardown(cfg, HostCommands())
    except Exception as exc:
        log("WARN", f"Cleanup aborted: {exc}")
    return 0


def run_command(command: str, cfg: RunConfig, detach: bool = False) -> int:
    pipeline = Pipeline(
        cfg,
        HostCommands(),
        on_launch=lambda handle: print_startup_banner(cfg, handle.pid),
    )
    with RunLock():
        pipeline.execute(COMMAND_STAGES[command], wait=not detach)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="microvm-runner",
        description="Provision and run a Firecracker microVM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Commands:\n" + "\n".join(f"  {name:<8} - {text}" for name, text in COMMANDS.items()),
    )
    parser.add_argument("command", nargs="?", choices=list(COMMANDS), metavar="COMMAND", help="one of: %(choices)s")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument(
        "--detach",
        action="store_true",
        help="For run/all: return once the guest is up instead of waiting for it to exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None and not args.show_config:
        parser.error("a command is required unless --show-config is given")

    try:
        cfg = parse_env()
    except ManagerError as exc:
        if args.command != "clean" or args.show_config:
            log("ERROR", str(exc))
            return 1
        # Cleanup must still run when the configuration is broken.
        log("WARN", f"{exc}; cleaning up with default settings")
        cfg = default_config()

    if args.show_config:
        show_config(cfg)
        return 0

    if args.command == "clean":
        return run_clean(cfg)

    try:
        return run_command(args.command, cfg, detach=args.detach)
    except ManagerError as exc:
        log("ERROR", f"{exc.stage} failed: {exc}")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
