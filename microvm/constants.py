"""Global constants and path configuration for microvm-runner.

The paths below are the state this tool leaves on the host between
invocations. They are literal so that every run finds the same kernel cache,
the same published image and the same control socket.
"""

from __future__ import annotations

import os
from pathlib import Path

# Persistent artifacts (kernel cache, published rootfs, hypervisor config).
STATE_DIR = Path("/var/lib/microvm-runner")
KERNEL_PATH = STATE_DIR / "vmlinux"
ROOTFS_PATH = STATE_DIR / "rootfs.ext4"
VM_CONFIG_PATH = STATE_DIR / "vm-config.json"

# Ephemeral, per-host run state.
WORK_ROOT = Path("/tmp/microvm-runner")
API_SOCKET_PATH = Path("/tmp/microvm-runner.sock")
VM_LOG_PATH = Path("/tmp/microvm-runner.log")
VM_METRICS_PATH = Path("/tmp/microvm-runner-metrics.json")
PID_PATH = Path("/tmp/microvm-runner.pid")
PROC_ROOT = Path("/proc")
LOCK_PATH = Path("/tmp/microvm-runner.lock")

DEFAULT_CONFIG_PATH = Path("/etc/microvm-runner.yaml")
KVM_DEVICE = Path("/dev/kvm")

DEFAULT_KERNEL_URL = "https://s3.amazonaws.com/spec.ccfc.min/img/quickstart_guide/x86_64/kernels/vmlinux.bin"
DEFAULT_BASE_IMAGE = "alpine:3.19"
DEFAULT_WORKLOAD_BINARY = "target/x86_64-unknown-linux-musl/release/dash-server"
DEFAULT_ASSET_DIR = "crates/dash-app/dist"

DEFAULT_ROOTFS_SIZE_MB = 256
DEFAULT_TAP_DEVICE = "tap0"
DEFAULT_HOST_IP = "172.16.0.1"
DEFAULT_GUEST_IP = "172.16.0.2"
DEFAULT_PREFIX_LEN = 24
DEFAULT_VCPUS = 2
DEFAULT_MEMORY_MIB = 512
DEFAULT_SERVICE_PORT = 3001
DEFAULT_DOWNLOAD_TIMEOUT = 60
SPAWN_TIMEOUT = 5.0
STOP_TIMEOUT = 10.0

# Layout inside the guest.
GUEST_BIN_DIR = "/usr/bin"
GUEST_ASSET_ROOT = "/var/www"
GUEST_ASSET_DIR = "/var/www/dist"
GUEST_INIT_PATH = "/init"
GUEST_IFACE = "eth0"
GUEST_MAC = "AA:FC:00:00:00:01"
BOOT_ARGS = f"console=ttyS0 reboot=k panic=1 pci=off init={GUEST_INIT_PATH}"

REQUIRED_TOOLS = (
    "firecracker",
    "docker",
    "mkfs.ext4",
    "ip",
    "iptables",
    "sysctl",
    "mount",
    "umount",
    "tar",
    "cp",
)

# Linux IFNAMSIZ minus the terminating NUL.
MAX_IFACE_NAME = 15

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
