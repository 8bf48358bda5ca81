"""Firecracker guest supervision for microvm-runner."""

from __future__ import annotations

import errno
import json
import signal
import socket
import subprocess
import time
from pathlib import Path
from typing import Dict, Optional

from microvm.constants import (
    API_SOCKET_PATH,
    BOOT_ARGS,
    GUEST_IFACE,
    GUEST_MAC,
    PID_PATH,
    PROC_ROOT,
    SPAWN_TIMEOUT,
    STOP_TIMEOUT,
    VM_CONFIG_PATH,
    VM_LOG_PATH,
    VM_METRICS_PATH,
)
from microvm.exceptions import LaunchError, ManagerError
from microvm.host import HostCommands
from microvm.models import KernelImage, NetworkLink, RootfsImage, VMProcessHandle, VMState
from microvm.utils import ensure_directory, log, remove_path, wait_for_path


def render_vm_config(
    kernel: Path,
    rootfs: Path,
    link: NetworkLink,
    vcpus: int,
    memory_mib: int,
    log_path: Path = VM_LOG_PATH,
    metrics_path: Path = VM_METRICS_PATH,
) -> Dict[str, object]:
    """Build the hypervisor's declarative machine description."""
    return {
        "boot-source": {
            "kernel_image_path": str(kernel),
            "boot_args": BOOT_ARGS,
        },
        "drives": [
            {
                "drive_id": "rootfs",
                "path_on_host": str(rootfs),
                "is_root_device": True,
                "is_read_only": False,
            }
        ],
        "network-interfaces": [
            {
                "iface_id": GUEST_IFACE,
                "guest_mac": GUEST_MAC,
                "host_dev_name": link.device,
            }
        ],
        "machine-config": {
            "vcpu_count": vcpus,
            "mem_size_mib": memory_mib,
        },
        "logger": {
            "log_path": str(log_path),
            "level": "Info",
        },
        "metrics": {
            "metrics_path": str(metrics_path),
        },
    }


class MicroVM:
    """Owns one hypervisor process from launch to stop.

    An instance is single-use: once stopped it cannot be relaunched.
    """

    def __init__(
        self,
        host: Optional[HostCommands] = None,
        vcpus: int = 2,
        memory_mib: int = 512,
        socket_path: Path = API_SOCKET_PATH,
        config_path: Path = VM_CONFIG_PATH,
        log_path: Path = VM_LOG_PATH,
        metrics_path: Path = VM_METRICS_PATH,
        pid_path: Path = PID_PATH,
        spawn_timeout: float = SPAWN_TIMEOUT,
    ) -> None:
        self.host = host or HostCommands()
        self.vcpus = vcpus
        self.memory_mib = memory_mib
        self.socket_path = socket_path
        self.config_path = config_path
        self.log_path = log_path
        self.metrics_path = metrics_path
        self.pid_path = pid_path
        self.spawn_timeout = spawn_timeout
        self.state = VMState.NOT_STARTED
        self.handle: Optional[VMProcessHandle] = None

    def launch(self, rootfs: RootfsImage, kernel: KernelImage, link: NetworkLink) -> VMProcessHandle:
        if self.state is not VMState.NOT_STARTED:
            raise ManagerError(f"Cannot launch a microVM in state '{self.state.value}'")
        self.state = VMState.LAUNCHING
        try:
            handle = self._launch(rootfs, kernel, link)
        except BaseException:
            self.state = VMState.STOPPED
            raise
        self.handle = handle
        self.state = VMState.RUNNING
        return handle

    def _launch(self, rootfs: RootfsImage, kernel: KernelImage, link: NetworkLink) -> VMProcessHandle:
        if not rootfs.path.is_file():
            raise LaunchError("missing-artifact", "rootfs", f"rootfs not found at {rootfs.path}; run 'build'")
        if not kernel.path.is_file():
            raise LaunchError("missing-artifact", "kernel", f"kernel not found at {kernel.path}; run 'kernel'")

        log("INFO", "Starting Firecracker VM...")
        self._cleanup_socket(self.socket_path)
        self._write_config(rootfs, kernel, link)

        cmd = [
            "firecracker",
            "--api-sock",
            str(self.socket_path),
            "--config-file",
            str(self.config_path),
        ]
        try:
            proc = self.host.spawn(cmd)
        except OSError as exc:
            raise LaunchError("spawn", cause=exc) from exc

        handle = VMProcessHandle(pid=proc.pid, process=proc, socket_path=self.socket_path)
        try:
            self._confirm_started(handle)
        except LaunchError:
            self._release_channel()
            raise
        try:
            self.pid_path.write_text(f"{proc.pid}\n")
        except OSError as exc:
            log("WARN", f"Could not record pid in {self.pid_path}: {exc}")
        log("SUCCESS", f"Firecracker started (PID {proc.pid}, API socket {self.socket_path})")
        return handle

    def _write_config(self, rootfs: RootfsImage, kernel: KernelImage, link: NetworkLink) -> None:
        config = render_vm_config(
            kernel.path,
            rootfs.path,
            link,
            self.vcpus,
            self.memory_mib,
            log_path=self.log_path,
            metrics_path=self.metrics_path,
        )
        try:
            ensure_directory(self.config_path.parent)
            self.config_path.write_text(json.dumps(config, indent=2) + "\n")
            # The hypervisor expects its log and metrics sinks to exist.
            for sink in (self.log_path, self.metrics_path):
                sink.touch(exist_ok=True)
        except OSError as exc:
            raise LaunchError("config", cause=exc) from exc
        log("DEBUG", f"VM config written to {self.config_path}")

    def _confirm_started(self, handle: VMProcessHandle) -> None:
        if not wait_for_path(self.socket_path, timeout=self.spawn_timeout):
            if handle.process.poll() is not None:
                raise LaunchError("spawn", cause=f"firecracker exited early with code {handle.process.returncode}")
            log("WARN", f"API socket {self.socket_path} did not appear within {self.spawn_timeout:.0f}s")
        elif handle.process.poll() is not None:
            raise LaunchError("spawn", cause=f"firecracker exited early with code {handle.process.returncode}")

    def _cleanup_socket(self, path: Path) -> None:
        """Remove a leftover control socket, refusing to touch one that is still served."""
        if not path.exists() and not path.is_symlink():
            return
        if path.is_socket():
            try:
                with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                    client.settimeout(0.2)
                    client.connect(str(path))
            except socket.timeout:
                pass
            except OSError as exc:
                if exc.errno not in {errno.ECONNREFUSED, errno.ENOENT}:
                    log("WARN", f"Probing socket {path} failed: {exc}")
            else:
                raise LaunchError("channel-in-use", cause=f"{path} is served by a running hypervisor; run 'clean'")
        try:
            remove_path(path)
        except PermissionError:
            self.host.run(["rm", "-f", str(path)], privileged=True)
        log("INFO", f"Removed stale control socket {path}")

    def _release_channel(self) -> None:
        for path in (self.socket_path, self.pid_path):
            try:
                remove_path(path)
            except PermissionError:
                self.host.run(["rm", "-f", str(path)], privileged=True, check=False)
            except OSError as exc:
                log("WARN", f"Could not remove {path}: {exc}")

    def stop(self, handle: Optional[VMProcessHandle] = None, timeout: float = STOP_TIMEOUT) -> None:
        """Ask the guest to terminate; a process that is already gone is not an error."""
        handle = handle or self.handle
        if handle is None or self.state in {VMState.NOT_STARTED, VMState.STOPPED}:
            self.state = VMState.STOPPED
            return
        self.state = VMState.STOPPING
        proc = handle.process
        try:
            if proc.poll() is None:
                log("INFO", f"Stopping Firecracker (PID {handle.pid})")
                proc.terminate()
                try:
                    proc.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    log("WARN", f"Firecracker did not exit within {timeout:.0f}s; killing")
                    proc.kill()
                    proc.wait(timeout=timeout)
        except ProcessLookupError:
            pass
        finally:
            self._release_channel()
            self.state = VMState.STOPPED

    def wait_until_stopped(self, handle: Optional[VMProcessHandle] = None) -> int:
        handle = handle or self.handle
        if handle is None:
            raise ManagerError("microVM not launched")

        shutdown_requested = False
        _first_sigint_time: Optional[float] = None
        _DOUBLE_PRESS_WINDOW = 3.0  # seconds

        def _do_shutdown():
            nonlocal shutdown_requested
            if shutdown_requested:
                return
            shutdown_requested = True
            log("INFO", "Shutting down VM...")
            try:
                handle.process.terminate()
            except ProcessLookupError:
                pass

        def _request_shutdown(signum, frame):
            nonlocal _first_sigint_time
            if signum == signal.SIGTERM:
                log("INFO", f"{signal.Signals(signum).name} received, shutting down VM")
                _do_shutdown()
                return
            now = time.time()
            if _first_sigint_time is not None and (now - _first_sigint_time) < _DOUBLE_PRESS_WINDOW:
                log("INFO", "Second Ctrl+C received, shutting down VM")
                _do_shutdown()
            else:
                _first_sigint_time = now
                log("WARN", "Press Ctrl+C again within 3s to shut down the VM")

        prev_sigterm = signal.signal(signal.SIGTERM, _request_shutdown)
        prev_sigint = signal.signal(signal.SIGINT, _request_shutdown)
        try:
            log("INFO", f"Waiting for Firecracker (PID {handle.pid}) to exit")
            while True:
                code = handle.process.poll()
                if code is not None:
                    log("INFO", f"Firecracker exited with status {code}")
                    return code
                time.sleep(1)
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)
            signal.signal(signal.SIGINT, prev_sigint)


def is_hypervisor_process(pid: int, proc_root: Path = PROC_ROOT) -> bool:
    """True if ``pid`` is a running firecracker, directly or under sudo."""
    try:
        cmdline = (proc_root / str(pid) / "cmdline").read_bytes()
    except OSError:
        return False
    args = [arg.decode(errors="replace") for arg in cmdline.split(b"\0") if arg]
    return any(Path(arg).name == "firecracker" for arg in args[:2])


def stop_recorded_vm(
    host: HostCommands,
    pid_path: Path = PID_PATH,
    timeout: float = STOP_TIMEOUT,
    proc_root: Path = PROC_ROOT,
) -> bool:
    """Stop a guest launched by an earlier invocation, using its PID file.

    The PID is only signalled while it still belongs to a firecracker
    process; a file left behind by a guest that exited on its own is removed.
    """
    try:
        raw = pid_path.read_text().strip()
    except FileNotFoundError:
        return False
    try:
        pid = int(raw)
    except ValueError:
        log("WARN", f"Ignoring malformed pid file {pid_path}")
        remove_path(pid_path)
        return False

    if not is_hypervisor_process(pid, proc_root):
        log("INFO", f"PID {pid} from {pid_path} is not a running Firecracker; removing stale pid file")
        remove_path(pid_path)
        return False

    try:
        host.terminate(pid)
    except ProcessLookupError:
        log("DEBUG", f"PID {pid} already gone")
        remove_path(pid_path)
        return False
    log("INFO", f"Sent SIGTERM to Firecracker (PID {pid})")

    deadline = time.time() + timeout
    while time.time() < deadline:
        if not is_hypervisor_process(pid, proc_root):
            break
        time.sleep(0.2)
    else:
        log("WARN", f"PID {pid} still alive after {timeout:.0f}s; killing")
        try:
            host.terminate(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    remove_path(pid_path)
    return True
