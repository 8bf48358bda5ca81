"""Guest kernel caching for microvm-runner."""

from __future__ import annotations

from pathlib import Path

import requests

from microvm.constants import DEFAULT_DOWNLOAD_TIMEOUT, DEFAULT_KERNEL_URL, KERNEL_PATH
from microvm.exceptions import FetchError
from microvm.models import KernelImage
from microvm.utils import download_file, ensure_directory, log


def kernel_cached(dest: Path) -> bool:
    try:
        return dest.is_file() and dest.stat().st_size > 0
    except OSError:
        return False


def ensure_kernel(
    dest: Path = KERNEL_PATH,
    source_url: str = DEFAULT_KERNEL_URL,
    timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
) -> KernelImage:
    """Make sure a kernel image exists at ``dest``, downloading it at most once."""
    if kernel_cached(dest):
        log("INFO", f"Kernel already present: {dest}")
        return KernelImage(path=dest, fetched=False)

    try:
        ensure_directory(dest.parent)
    except OSError as exc:
        raise FetchError("write", exc) from exc

    try:
        download_file(source_url, dest, timeout=timeout, label="Downloading kernel")
    except requests.Timeout as exc:
        raise FetchError("timeout", f"downloading {source_url} exceeded {timeout}s") from exc
    except requests.RequestException as exc:
        raise FetchError("network", exc) from exc
    except OSError as exc:
        raise FetchError("write", exc) from exc

    log("SUCCESS", f"Kernel downloaded: {dest}")
    return KernelImage(path=dest, fetched=True)
