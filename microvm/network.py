"""TAP device and NAT provisioning for microvm-runner."""

from __future__ import annotations

import subprocess
from typing import List, Optional

from microvm.exceptions import NetworkError
from microvm.host import HostCommands
from microvm.models import NetworkLink
from microvm.utils import log

_PERMISSION_MARKERS = ("operation not permitted", "permission denied", "you must be root", "a password is required")
_ABSENT_MARKERS = ("cannot find device", "does not exist", "no such", "bad rule", "no chain/target/match")


def nat_rule(link: NetworkLink, external_interface: str) -> List[str]:
    return ["-t", "nat", "POSTROUTING", "-s", str(link.subnet), "-o", external_interface, "-j", "MASQUERADE"]


def forward_rules(link: NetworkLink) -> List[List[str]]:
    return [
        ["FORWARD", "-i", link.device, "-j", "ACCEPT"],
        ["FORWARD", "-o", link.device, "-j", "ACCEPT"],
    ]


def _with_action(rule: List[str], action: str) -> List[str]:
    """Insert ``-A``/``-D`` before the chain name, after an optional ``-t table``."""
    if rule[:1] == ["-t"]:
        return rule[:2] + [action] + rule[2:]
    return [action] + rule


def _stderr(exc: subprocess.CalledProcessError) -> str:
    return (exc.stderr or exc.output or "").strip()


def _classify(exc: subprocess.CalledProcessError, action: str) -> NetworkError:
    detail = _stderr(exc)
    if any(marker in detail.lower() for marker in _PERMISSION_MARKERS):
        return NetworkError("permission", f"{action}: {detail}")
    return NetworkError("command", f"{action} exited with {exc.returncode}" + (f": {detail}" if detail else ""))


def resolve_external_interface(host: HostCommands, configured: Optional[str] = None) -> Optional[str]:
    if configured:
        return configured
    return host.default_interface()


def setup_link(link: NetworkLink, host: Optional[HostCommands] = None, external_interface: Optional[str] = None) -> None:
    """Create the TAP device, address it, and route guest traffic out through NAT."""
    host = host or HostCommands()
    log("INFO", f"Setting up network ({link.device}, host {link.host_cidr})...")

    if host.link_exists(link.device):
        raise NetworkError(
            "device-exists",
            f"{link.device} is already present; run 'clean' or choose another TAP_DEVICE",
        )

    steps = [
        (f"create {link.device}", lambda: host.create_tap(link.device)),
        (f"assign {link.host_cidr}", lambda: host.add_address(link.device, link.host_cidr)),
        (f"bring up {link.device}", lambda: host.set_link_up(link.device)),
        ("enable ip forwarding", host.enable_ip_forwarding),
    ]
    for action, func in steps:
        try:
            func()
        except subprocess.CalledProcessError as exc:
            raise _classify(exc, action) from exc
        except OSError as exc:
            raise NetworkError("command", f"{action}: {exc}") from exc

    ext = resolve_external_interface(host, external_interface)
    if not ext:
        raise NetworkError("no-external-interface", "no default route found; set EXTERNAL_IFACE")

    for rule in [nat_rule(link, ext), *forward_rules(link)]:
        try:
            host.iptables(_with_action(rule, "-A"))
        except subprocess.CalledProcessError as exc:
            raise _classify(exc, "iptables " + " ".join(rule)) from exc

    log("SUCCESS", f"Network configured. Guest will be at {link.guest_address} (NAT via {ext})")


def teardown_link(link: NetworkLink, host: Optional[HostCommands] = None, external_interface: Optional[str] = None) -> None:
    """Remove the TAP device and its rules. Never raises."""
    host = host or HostCommands()
    log("INFO", "Cleaning up network...")

    try:
        result = host.delete_link(link.device)
        if result.returncode == 0:
            log("INFO", f"Deleted {link.device}")
        elif _is_absent(result.stderr):
            log("DEBUG", f"{link.device} already absent")
        else:
            log("WARN", f"Could not delete {link.device}: {(result.stderr or '').strip()}")
    except Exception as exc:
        log("WARN", f"Could not delete {link.device}: {exc}")

    try:
        ext = resolve_external_interface(host, external_interface)
    except Exception as exc:
        log("WARN", f"Could not determine external interface: {exc}")
        ext = None

    rules = forward_rules(link)
    if ext:
        rules.insert(0, nat_rule(link, ext))
    else:
        log("WARN", "No default route found; skipping NAT rule removal (set EXTERNAL_IFACE)")

    for rule in rules:
        _delete_rule(host, rule)

    log("INFO", "Network cleaned up")


def _is_absent(stderr: Optional[str]) -> bool:
    text = (stderr or "").lower()
    return any(marker in text for marker in _ABSENT_MARKERS)


def _delete_rule(host: HostCommands, rule: List[str]) -> None:
    # Rules appended more than once by earlier runs are removed one at a time.
    for _ in range(16):
        try:
            result = host.iptables(_with_action(rule, "-D"), check=False)
        except Exception as exc:
            log("WARN", f"Could not remove iptables rule {' '.join(rule)}: {exc}")
            return
        if result.returncode == 0:
            log("DEBUG", f"Removed iptables rule {' '.join(rule)}")
            continue
        if not _is_absent(result.stderr):
            log("WARN", f"Could not remove iptables rule {' '.join(rule)}: {(result.stderr or '').strip()}")
        return
