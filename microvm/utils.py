"""Utility functions for microvm-runner."""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional

import requests

from microvm.constants import _LOG_VERBOSE, KVM_DEVICE
from microvm.exceptions import ManagerError

USER_AGENT = "microvm-runner/1.0"


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def kvm_available(device: Path = KVM_DEVICE) -> bool:
    """Return True if the KVM device node is present."""
    return device.exists()


def wait_for_path(path: Path, timeout: float = 10.0, interval: float = 0.1) -> bool:
    """Poll for a filesystem path to show up (e.g., the hypervisor API socket)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if path.exists():
            return True
        time.sleep(interval)
    return False


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def remove_path(path: Path) -> bool:
    """Unlink a file if present. Returns True when something was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    log("DEBUG", f"Removed {path}")
    return True


def download_file(url: str, destination: Path, timeout: float = 60, label: str = "Downloading") -> int:
    """Stream ``url`` into ``destination`` atomically, printing a progress bar.

    The payload is written to a temporary file next to ``destination`` and
    renamed over it only once the transfer completes, so an interrupted
    download never leaves a truncated file at ``destination``. ``timeout``
    bounds each connect and read as well as the whole transfer. Transfer
    errors, an empty body included, propagate as ``requests.RequestException``;
    local I/O errors as ``OSError``. Returns the number of bytes written.
    """
    log("INFO", f"{label}: {url}")
    downloaded = 0
    start_time = time.time()
    deadline = start_time + timeout

    with requests.Session() as session:
        session.headers["User-Agent"] = USER_AGENT
        with session.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
            response.raise_for_status()
            total = response.headers.get("Content-Length")
            total_bytes = int(total) if total else None

            with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=f".{destination.name}.") as tmp:
                tmp_path = Path(tmp.name)
                try:
                    for chunk in response.iter_content(chunk_size=1024 * 256):
                        if time.time() > deadline:
                            raise requests.Timeout(f"transfer of {url} did not finish within {timeout}s")
                        if not chunk:
                            continue
                        tmp.write(chunk)
                        downloaded += len(chunk)

                        elapsed = time.time() - start_time
                        speed = downloaded / elapsed if elapsed > 0 else 0
                        downloaded_mb = downloaded / (1024 * 1024)
                        if total_bytes:
                            total_mb = total_bytes / (1024 * 1024)
                            pct = downloaded * 100 / total_bytes
                            bar_len = 30
                            filled = min(bar_len, int(bar_len * downloaded / total_bytes))
                            bar = "#" * filled + "-" * (bar_len - filled)
                            print(
                                f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                                f"({speed / (1024 * 1024):.1f} MiB/s)",
                                end="", flush=True,
                            )
                        else:
                            print(
                                f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                                end="", flush=True,
                            )
                    print(flush=True)  # newline after progress
                    if downloaded == 0:
                        raise requests.RequestException(f"empty response from {url}")
                    tmp.flush()
                    os.fsync(tmp.fileno())
                except BaseException:
                    tmp.close()
                    tmp_path.unlink(missing_ok=True)
                    raise

    try:
        tmp_path.replace(destination)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
    return downloaded


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
