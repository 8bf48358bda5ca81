"""Provisioning pipeline, run lock and teardown for microvm-runner.

Stages run in order and each completed stage may register a reversal. When a
stage fails, the reversals of the stages completed in the same invocation are
run newest-first before the error propagates. ``teardown`` is the standalone
best-effort reversal used by the ``clean`` command.
"""

from __future__ import annotations

import fcntl
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from microvm.constants import (
    API_SOCKET_PATH,
    KERNEL_PATH,
    LOCK_PATH,
    PID_PATH,
    ROOTFS_PATH,
    VM_CONFIG_PATH,
    VM_LOG_PATH,
    VM_METRICS_PATH,
    WORK_ROOT,
)
from microvm.exceptions import NetworkError, RunLockedError
from microvm.host import HostCommands
from microvm.kernel import ensure_kernel
from microvm.models import KernelImage, RootfsImage, RunConfig, VMProcessHandle
from microvm.network import setup_link, teardown_link
from microvm.prereqs import check_capabilities
from microvm.rootfs import build_rootfs
from microvm.utils import log, remove_path
from microvm.vm import MicroVM, stop_recorded_vm


class Stage(str, Enum):
    PREREQS = "prereqs"
    KERNEL = "kernel"
    BUILD = "build"
    NETWORK = "network"
    RUN = "run"


COMMAND_STAGES = {
    "prereqs": [Stage.PREREQS],
    "build": [Stage.PREREQS, Stage.BUILD],
    "kernel": [Stage.KERNEL],
    "network": [Stage.NETWORK],
    "run": [Stage.RUN],
    "all": [Stage.PREREQS, Stage.KERNEL, Stage.BUILD, Stage.NETWORK, Stage.RUN],
}


class RunLock:
    """Exclusive, non-blocking advisory lock held for one invocation."""

    def __init__(self, path: Path = LOCK_PATH) -> None:
        self.path = path
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise RunLockedError(f"Another microvm-runner invocation holds {self.path}")
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class Pipeline:
    def __init__(
        self,
        cfg: RunConfig,
        host: Optional[HostCommands] = None,
        *,
        kernel_path: Path = KERNEL_PATH,
        rootfs_path: Path = ROOTFS_PATH,
        work_root: Path = WORK_ROOT,
        vm: Optional[MicroVM] = None,
        on_launch: Optional[Callable[[VMProcessHandle], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.on_launch = on_launch
        self.host = host or HostCommands()
        self.kernel_path = kernel_path
        self.rootfs_path = rootfs_path
        self.work_root = work_root
        self.vm = vm or MicroVM(self.host, vcpus=cfg.vcpus, memory_mib=cfg.memory_mib)
        self.state: Optional[Stage] = None
        self.completed: List[Stage] = []
        self.kernel: Optional[KernelImage] = None
        self.rootfs: Optional[RootfsImage] = None
        self.handle: Optional[VMProcessHandle] = None
        self._reversals: List[Tuple[Stage, Callable[[], None]]] = []

    def execute(self, stages: Sequence[Stage], wait: bool = True) -> None:
        for stage in stages:
            self.state = stage
            log("DEBUG", f"Pipeline stage: {stage.value}")
            try:
                getattr(self, f"_stage_{stage.value}")()
            except BaseException:
                self.unwind()
                raise
            self.completed.append(stage)

        if wait and self.handle is not None:
            self.vm.wait_until_stopped(self.handle)
            self.vm.stop(self.handle)
            self._reversals = [(s, fn) for s, fn in self._reversals if s is not Stage.RUN]
        self.state = None

    def unwind(self) -> None:
        """Run registered reversals newest-first; failures are logged, not raised."""
        if self._reversals:
            log("WARN", "Rolling back completed stages...")
        while self._reversals:
            stage, reverse = self._reversals.pop()
            try:
                reverse()
            except Exception as exc:
                log("WARN", f"Rollback of {stage.value} failed: {exc}")

    def _register(self, stage: Stage, reverse: Callable[[], None]) -> None:
        self._reversals.append((stage, reverse))

    def _stage_prereqs(self) -> None:
        check_capabilities(self.host)

    def _stage_kernel(self) -> None:
        self.kernel = ensure_kernel(self.kernel_path, self.cfg.kernel_url, timeout=self.cfg.download_timeout)

    def _stage_build(self) -> None:
        self.rootfs = build_rootfs(
            self.cfg.workload_binary,
            self.cfg.asset_dir,
            self.cfg.rootfs_size_mb,
            self.cfg.link,
            host=self.host,
            dest=self.rootfs_path,
            work_root=self.work_root,
            base_image=self.cfg.base_image,
        )
        workspace = self.rootfs.workspace
        self._register(Stage.BUILD, lambda: remove_workspace(self.host, workspace))

    def _stage_network(self) -> None:
        link = self.cfg.link
        try:
            setup_link(link, self.host, self.cfg.external_interface)
        except NetworkError as exc:
            # A device-exists refusal means the device belongs to another run.
            if exc.reason != "device-exists":
                teardown_link(link, self.host, self.cfg.external_interface)
            raise
        self._register(Stage.NETWORK, lambda: teardown_link(link, self.host, self.cfg.external_interface))

    def _stage_run(self) -> None:
        rootfs = self.rootfs or RootfsImage(
            path=self.rootfs_path,
            size_mb=self.cfg.rootfs_size_mb,
            workspace=self.work_root,
            link=self.cfg.link,
        )
        kernel = self.kernel or KernelImage(path=self.kernel_path)
        self.handle = self.vm.launch(rootfs, kernel, self.cfg.link)
        handle = self.handle
        self._register(Stage.RUN, lambda: self.vm.stop(handle))
        if self.on_launch is not None:
            self.on_launch(handle)


def remove_workspace(host: HostCommands, work_root: Path) -> None:
    """Unmount anything left mounted under ``work_root`` and delete it."""
    if not work_root.exists():
        return
    for mount_point in [work_root / "mnt", *work_root.glob("*/mnt")]:
        if os.path.ismount(mount_point):
            log("INFO", f"Unmounting leftover {mount_point}")
            host.umount(mount_point)
    try:
        shutil.rmtree(work_root)
    except PermissionError:
        host.remove_tree(work_root)
    log("INFO", f"Removed {work_root}")


def teardown(
    cfg: RunConfig,
    host: Optional[HostCommands] = None,
    *,
    work_root: Path = WORK_ROOT,
    pid_path: Path = PID_PATH,
    ephemeral_files: Sequence[Path] = (API_SOCKET_PATH, VM_LOG_PATH, VM_METRICS_PATH, VM_CONFIG_PATH),
) -> List[str]:
    """Reverse everything a run may have left behind. Returns the names of failed steps."""
    host = host or HostCommands()
    log("INFO", "Cleaning up...")

    def _remove_files() -> None:
        for path in ephemeral_files:
            try:
                remove_path(path)
            except PermissionError:
                host.run(["rm", "-f", str(path)], privileged=True)

    steps: List[Tuple[str, Callable[[], object]]] = [
        ("stop-vm", lambda: stop_recorded_vm(host, pid_path)),
        ("network", lambda: teardown_link(cfg.link, host, cfg.external_interface)),
        ("workspace", lambda: remove_workspace(host, work_root)),
        ("files", _remove_files),
    ]
    failed: List[str] = []
    for name, step in steps:
        try:
            step()
        except Exception as exc:
            failed.append(name)
            log("WARN", f"Cleanup step '{name}' failed: {exc}")

    if failed:
        log("WARN", f"Cleanup finished with warnings ({', '.join(failed)})")
    else:
        log("SUCCESS", "Cleanup complete")
    return failed
