"""Host capability detection for microvm-runner."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from microvm.constants import KVM_DEVICE, REQUIRED_TOOLS
from microvm.exceptions import HostEnvironmentError
from microvm.host import HostCommands
from microvm.models import HostCapability
from microvm.utils import kvm_available, log


def probe_capabilities(
    host: HostCommands,
    tools: Iterable[str] = REQUIRED_TOOLS,
    kvm_device: Path = KVM_DEVICE,
) -> HostCapability:
    """Collect capability flags without judging them."""
    missing = [tool for tool in tools if host.which(tool) is None]
    return HostCapability(
        kvm=kvm_available(kvm_device),
        tools=not missing,
        superuser=host.has_superuser(),
        missing_tools=missing,
    )


def check_capabilities(
    host: Optional[HostCommands] = None,
    tools: Iterable[str] = REQUIRED_TOOLS,
    kvm_device: Path = KVM_DEVICE,
) -> HostCapability:
    """Verify the host can run the pipeline, raising on the first unmet requirement."""
    host = host or HostCommands()
    log("INFO", "Checking prerequisites...")
    caps = probe_capabilities(host, tools, kvm_device)

    if not caps.kvm:
        raise HostEnvironmentError(
            "no-hardware-virtualization",
            cause=f"{kvm_device} not found; ensure this is Linux with KVM enabled",
        )
    if caps.missing_tools:
        first = caps.missing_tools[0]
        raise HostEnvironmentError(
            "missing-tool",
            tool=first,
            cause=f"not found on PATH: {', '.join(caps.missing_tools)}",
        )
    if not caps.superuser:
        raise HostEnvironmentError(
            "no-superuser",
            cause="run as root or configure passwordless sudo for network and mount operations",
        )

    log("SUCCESS", "Prerequisites OK")
    return caps
