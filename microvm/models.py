"""Data models for microvm-runner."""

from __future__ import annotations

import ipaddress
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from microvm.constants import (
    DEFAULT_GUEST_IP,
    DEFAULT_HOST_IP,
    DEFAULT_PREFIX_LEN,
    DEFAULT_TAP_DEVICE,
    MAX_IFACE_NAME,
)
from microvm.exceptions import ManagerError


@dataclass
class HostCapability:
    kvm: bool
    tools: bool
    superuser: bool
    missing_tools: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.kvm and self.tools and self.superuser


@dataclass(frozen=True)
class NetworkLink:
    """Point-to-point link between the host TAP device and the guest's eth0."""

    device: str = DEFAULT_TAP_DEVICE
    host_address: str = DEFAULT_HOST_IP
    guest_address: str = DEFAULT_GUEST_IP
    prefix_len: int = DEFAULT_PREFIX_LEN

    def __post_init__(self) -> None:
        if not self.device or len(self.device) > MAX_IFACE_NAME or "/" in self.device or " " in self.device:
            raise ManagerError(f"Invalid TAP device name '{self.device}' (1-{MAX_IFACE_NAME} chars, no '/' or spaces)")
        if not 1 <= self.prefix_len <= 30:
            raise ManagerError(f"PREFIX_LEN must be between 1 and 30 (got {self.prefix_len})")
        try:
            host = ipaddress.IPv4Address(self.host_address)
            guest = ipaddress.IPv4Address(self.guest_address)
        except ValueError as exc:
            raise ManagerError(f"Invalid link address: {exc}") from exc
        if host == guest:
            raise ManagerError("HOST_IP and GUEST_IP must differ")
        if guest not in self.subnet:
            raise ManagerError(f"GUEST_IP {guest} is not inside {self.subnet}")

    @property
    def subnet(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(f"{self.host_address}/{self.prefix_len}", strict=False)

    @property
    def host_cidr(self) -> str:
        return f"{self.host_address}/{self.prefix_len}"

    @property
    def guest_cidr(self) -> str:
        return f"{self.guest_address}/{self.prefix_len}"


@dataclass
class RootfsImage:
    path: Path
    size_mb: int
    workspace: Path
    link: NetworkLink


@dataclass
class KernelImage:
    path: Path
    fetched: bool = False


class VMState(str, Enum):
    NOT_STARTED = "not-started"
    LAUNCHING = "launching"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class VMProcessHandle:
    pid: int
    process: subprocess.Popen
    socket_path: Path


@dataclass
class RunConfig:
    link: NetworkLink
    rootfs_size_mb: int
    vcpus: int
    memory_mib: int
    kernel_url: str
    base_image: str
    workload_binary: Path
    asset_dir: Path
    service_port: int
    download_timeout: int
    external_interface: Optional[str] = None
