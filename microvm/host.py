"""Host command wrappers for microvm-runner.

Everything that touches host state (network devices, iptables, loop mounts,
the container engine, the hypervisor process) goes through ``HostCommands``.
Image assembly and path handling stay in plain Python so they can be
exercised against a fake host in tests.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
from pathlib import Path
from typing import List, Optional

from microvm.utils import log, run


class HostCommands:
    """Thin wrapper over the external tools the pipeline depends on."""

    def __init__(self, use_sudo: Optional[bool] = None) -> None:
        if use_sudo is None:
            use_sudo = os.geteuid() != 0
        self.use_sudo = use_sudo

    def _privileged(self, cmd: List[str]) -> List[str]:
        return ["sudo", *cmd] if self.use_sudo else cmd

    def run(self, cmd: List[str], privileged: bool = False, check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        if privileged:
            cmd = self._privileged(cmd)
        kwargs.setdefault("capture_output", True)
        return run(cmd, check=check, **kwargs)

    # Capability probes -------------------------------------------------

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def has_superuser(self) -> bool:
        if not self.use_sudo:
            return True
        if shutil.which("sudo") is None:
            return False
        result = self.run(["sudo", "-n", "true"], check=False)
        return result.returncode == 0

    # Network -----------------------------------------------------------

    def link_exists(self, device: str) -> bool:
        result = self.run(["ip", "link", "show", "dev", device], check=False)
        return result.returncode == 0

    def create_tap(self, device: str) -> None:
        self.run(["ip", "tuntap", "add", "dev", device, "mode", "tap"], privileged=True)

    def add_address(self, device: str, cidr: str) -> None:
        self.run(["ip", "addr", "add", cidr, "dev", device], privileged=True)

    def set_link_up(self, device: str) -> None:
        self.run(["ip", "link", "set", "dev", device, "up"], privileged=True)

    def delete_link(self, device: str) -> subprocess.CompletedProcess:
        return self.run(["ip", "link", "del", device], privileged=True, check=False)

    def enable_ip_forwarding(self) -> None:
        self.run(["sysctl", "-w", "net.ipv4.ip_forward=1"], privileged=True)

    def default_interface(self) -> Optional[str]:
        """Return the device carrying the host's default route, if any."""
        result = self.run(["ip", "route", "show", "default"], check=False)
        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            parts = line.split()
            if "default" in parts and "dev" in parts:
                idx = parts.index("dev")
                if idx + 1 < len(parts):
                    return parts[idx + 1]
        return None

    def iptables(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        return self.run(["iptables", *args], privileged=True, check=check)

    # Image assembly ----------------------------------------------------

    def export_base_image(self, image: str, dest: Path) -> None:
        """Unpack the filesystem of container ``image`` into ``dest``."""
        created = self.run(["docker", "create", image])
        container_id = created.stdout.strip()
        try:
            log("DEBUG", f"Running: docker export {container_id} | tar -C {dest} -xf -")
            exporter = subprocess.Popen(["docker", "export", container_id], stdout=subprocess.PIPE)
            try:
                extract = subprocess.run(
                    ["tar", "-C", str(dest), "-xf", "-"],
                    stdin=exporter.stdout,
                    capture_output=True,
                    text=True,
                )
            finally:
                if exporter.stdout is not None:
                    exporter.stdout.close()
                exporter.wait()
            if exporter.returncode != 0:
                raise subprocess.CalledProcessError(exporter.returncode, ["docker", "export", container_id])
            if extract.returncode != 0:
                raise subprocess.CalledProcessError(
                    extract.returncode, extract.args, output=extract.stdout, stderr=extract.stderr
                )
        finally:
            self.run(["docker", "rm", container_id], check=False)

    def make_filesystem(self, image: Path) -> None:
        self.run(["mkfs.ext4", "-F", "-q", str(image)])

    def mount(self, image: Path, target: Path) -> None:
        self.run(["mount", "-o", "loop", str(image), str(target)], privileged=True)

    def umount(self, target: Path) -> None:
        self.run(["umount", str(target)], privileged=True)

    def copy_tree(self, src: Path, dst: Path) -> None:
        self.run(["cp", "-a", f"{src}/.", f"{dst}/"], privileged=True)

    # Hypervisor process ------------------------------------------------

    def spawn(self, cmd: List[str], **kwargs) -> subprocess.Popen:
        full = self._privileged(cmd)
        log("DEBUG", f"Spawning: {' '.join(full)}")
        return subprocess.Popen(full, **kwargs)

    def terminate(self, pid: int, sig: int = signal.SIGTERM) -> None:
        """Signal a process that may be owned by root."""
        if self.use_sudo:
            result = self.run(["kill", f"-{int(sig)}", str(pid)], privileged=True, check=False)
            if result.returncode != 0:
                raise ProcessLookupError(pid)
            return
        os.kill(pid, sig)

    def remove_tree(self, path: Path) -> None:
        if self.use_sudo:
            self.run(["rm", "-rf", str(path)], privileged=True)
        else:
            shutil.rmtree(path)
