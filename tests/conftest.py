"""Shared test fixtures and a fake host for privileged operations."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from microvm.models import NetworkLink, RunConfig


class FakeProcess:
    """Stand-in for the hypervisor's ``subprocess.Popen`` object."""

    def __init__(self, pid: int = 4242, exit_early: Optional[int] = None, hang: bool = False) -> None:
        self.pid = pid
        self.returncode: Optional[int] = exit_early
        self.hang = hang
        self.terminated = False
        self.killed = False

    def poll(self) -> Optional[int]:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.hang:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: Optional[float] = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired(cmd="firecracker", timeout=timeout or 0)
        return self.returncode


class FakeHost:
    """In-memory replacement for ``microvm.host.HostCommands``.

    Network devices and iptables rules are tracked as state so setup and
    teardown can be checked against each other. ``fail_on`` maps a method
    name to the exception it should raise.
    """

    use_sudo = False

    def __init__(self) -> None:
        self.calls: List[Tuple[str, tuple]] = []
        self.links: Dict[str, Dict[str, object]] = {}
        self.rules: List[Tuple[str, ...]] = []
        self.missing_tools: List[str] = []
        self.superuser = True
        self.default_iface: Optional[str] = "eth0"
        self.fail_on: Dict[str, BaseException] = {}
        self.process = FakeProcess()
        self.alive_pids = set()
        self.signals: List[Tuple[int, int]] = []

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise self.fail_on[name]

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def run(self, cmd, privileged=False, check=True, **kwargs):
        self._record("run", tuple(cmd))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def which(self, tool):
        return None if tool in self.missing_tools else f"/usr/bin/{tool}"

    def has_superuser(self):
        return self.superuser

    def link_exists(self, device):
        return device in self.links

    def create_tap(self, device):
        self._record("create_tap", device)
        self.links[device] = {"up": False, "addresses": []}

    def add_address(self, device, cidr):
        self._record("add_address", device, cidr)
        self.links[device]["addresses"].append(cidr)

    def set_link_up(self, device):
        self._record("set_link_up", device)
        self.links[device]["up"] = True

    def delete_link(self, device):
        self._record("delete_link", device)
        if self.links.pop(device, None) is None:
            return subprocess.CompletedProcess([], 1, stdout="", stderr=f'Cannot find device "{device}"')
        return subprocess.CompletedProcess([], 0, stdout="", stderr="")

    def enable_ip_forwarding(self):
        self._record("enable_ip_forwarding")

    def default_interface(self):
        return self.default_iface

    def iptables(self, args, check=True):
        self._record("iptables", *args)
        if args[:1] == ["-t"]:
            action, rule = args[2], tuple(args[:2] + args[3:])
        else:
            action, rule = args[0], tuple(args[1:])
        if action == "-A":
            self.rules.append(rule)
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")
        if rule in self.rules:
            self.rules.remove(rule)
            return subprocess.CompletedProcess(args, 0, stdout="", stderr="")
        stderr = "iptables: Bad rule (does a matching rule exist in that chain?)."
        if check:
            raise subprocess.CalledProcessError(1, ["iptables", *args], stderr=stderr)
        return subprocess.CompletedProcess(args, 1, stdout="", stderr=stderr)

    def export_base_image(self, image, dest):
        self._record("export_base_image", image, dest)
        for sub in ("bin", "etc", "usr/bin", "proc", "sys", "dev", "mnt"):
            (dest / sub).mkdir(parents=True, exist_ok=True)
        (dest / "etc" / "alpine-release").write_text("3.19.0\n")

    def make_filesystem(self, image):
        self._record("make_filesystem", image)

    def mount(self, image, target):
        self._record("mount", image, target)

    def umount(self, target):
        self._record("umount", target)

    def copy_tree(self, src, dst):
        self._record("copy_tree", src, dst)
        shutil.copytree(src, dst, dirs_exist_ok=True)

    def spawn(self, cmd, **kwargs):
        self._record("spawn", tuple(cmd))
        sock = Path(cmd[cmd.index("--api-sock") + 1])
        if self.process.returncode is None:
            sock.touch()
        self.alive_pids.add(self.process.pid)
        return self.process

    def terminate(self, pid, sig=15):
        self._record("terminate", pid, sig)
        if pid not in self.alive_pids:
            raise ProcessLookupError(pid)
        self.signals.append((pid, sig))
        self.alive_pids.discard(pid)

    def remove_tree(self, path):
        self._record("remove_tree", path)
        shutil.rmtree(path)


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def default_link() -> NetworkLink:
    return NetworkLink()


@pytest.fixture
def workload(tmp_path) -> Tuple[Path, Path]:
    """A fake workload binary and asset bundle."""
    binary = tmp_path / "artifacts" / "dash-server"
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"\x7fELF" + b"\0" * 1024)
    assets = tmp_path / "artifacts" / "dist"
    (assets / "pkg").mkdir(parents=True)
    (assets / "index.html").write_text("<html></html>\n")
    (assets / "pkg" / "app.wasm").write_bytes(b"\0asm" + b"\0" * 64)
    return binary, assets


@pytest.fixture
def run_config(workload, default_link) -> RunConfig:
    binary, assets = workload
    return RunConfig(
        link=default_link,
        rootfs_size_mb=16,
        vcpus=2,
        memory_mib=512,
        kernel_url="https://example.com/vmlinux.bin",
        base_image="alpine:3.19",
        workload_binary=binary,
        asset_dir=assets,
        service_port=3001,
        download_timeout=5,
    )


# All environment variables that parse_env() reads, cleared for a clean slate.
_PARSE_ENV_VARS = [
    "MICROVM_CONFIG",
    "TAP_DEVICE",
    "HOST_IP",
    "GUEST_IP",
    "PREFIX_LEN",
    "EXTERNAL_IFACE",
    "ROOTFS_SIZE_MB",
    "VCPUS",
    "MEMORY",
    "KERNEL_URL",
    "BASE_IMAGE",
    "WORKLOAD_BINARY",
    "ASSET_DIR",
    "SERVICE_PORT",
    "DOWNLOAD_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every variable parse_env() reads and point the settings file at nothing."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("microvm.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
