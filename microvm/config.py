"""Configuration loading and environment variable parsing for microvm-runner."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from microvm.constants import (
    DEFAULT_ASSET_DIR,
    DEFAULT_BASE_IMAGE,
    DEFAULT_CONFIG_PATH,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_GUEST_IP,
    DEFAULT_HOST_IP,
    DEFAULT_KERNEL_URL,
    DEFAULT_MEMORY_MIB,
    DEFAULT_PREFIX_LEN,
    DEFAULT_ROOTFS_SIZE_MB,
    DEFAULT_SERVICE_PORT,
    DEFAULT_TAP_DEVICE,
    DEFAULT_VCPUS,
    DEFAULT_WORKLOAD_BINARY,
)
from microvm.exceptions import ManagerError
from microvm.models import NetworkLink, RunConfig
from microvm.utils import get_env, log, parse_int_env

# settings-file key -> environment variable
SETTINGS_KEYS = {
    "tap_device": "TAP_DEVICE",
    "host_ip": "HOST_IP",
    "guest_ip": "GUEST_IP",
    "prefix_len": "PREFIX_LEN",
    "external_interface": "EXTERNAL_IFACE",
    "rootfs_size_mb": "ROOTFS_SIZE_MB",
    "vcpus": "VCPUS",
    "memory_mib": "MEMORY",
    "kernel_url": "KERNEL_URL",
    "base_image": "BASE_IMAGE",
    "workload_binary": "WORKLOAD_BINARY",
    "asset_dir": "ASSET_DIR",
    "service_port": "SERVICE_PORT",
    "download_timeout": "DOWNLOAD_TIMEOUT",
}


def load_settings(config_path: Optional[Path] = None) -> Dict[str, str]:
    """Read the optional YAML settings file; a missing default file is not an error."""
    explicit = config_path is not None or get_env("MICROVM_CONFIG") is not None
    if config_path is None:
        config_path = Path(get_env("MICROVM_CONFIG") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        if explicit:
            raise ManagerError(f"Settings file missing: {config_path}")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"{config_path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ManagerError(f"Cannot read {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"{config_path} must contain a YAML mapping, got {type(data).__name__}")

    settings: Dict[str, str] = {}
    for key, value in data.items():
        if key not in SETTINGS_KEYS:
            log("WARN", f"Ignoring unknown setting '{key}' in {config_path}")
            continue
        if value is not None:
            settings[key] = str(value)
    log("DEBUG", f"Loaded {len(settings)} setting(s) from {config_path}")
    return settings


def _setting(settings: Dict[str, Any], key: str, default: str) -> str:
    env_value = get_env(SETTINGS_KEYS[key])
    if env_value is not None and env_value.strip():
        return env_value.strip()
    return str(settings.get(key, default)).strip() or default


def _int_setting(settings: Dict[str, Any], key: str, default: int, min_val: int = 1, max_val: Optional[int] = None) -> int:
    env_name = SETTINGS_KEYS[key]
    if get_env(env_name) is None and key in settings:
        raw = settings[key]
        try:
            value = int(raw)
        except ValueError:
            raise ManagerError(f"{key} must be an integer (got '{raw}')")
        if value < min_val or (max_val is not None and value > max_val):
            upper = f"..{max_val}" if max_val is not None else "+"
            raise ManagerError(f"{key} must be in range {min_val}{upper} (got {value})")
        return value
    return parse_int_env(env_name, str(default), min_val=min_val, max_val=max_val)


def default_config() -> RunConfig:
    """Built-in defaults, ignoring the environment and settings file."""
    return RunConfig(
        link=NetworkLink(),
        rootfs_size_mb=DEFAULT_ROOTFS_SIZE_MB,
        vcpus=DEFAULT_VCPUS,
        memory_mib=DEFAULT_MEMORY_MIB,
        kernel_url=DEFAULT_KERNEL_URL,
        base_image=DEFAULT_BASE_IMAGE,
        workload_binary=Path(DEFAULT_WORKLOAD_BINARY),
        asset_dir=Path(DEFAULT_ASSET_DIR),
        service_port=DEFAULT_SERVICE_PORT,
        download_timeout=DEFAULT_DOWNLOAD_TIMEOUT,
    )


def parse_env(config_path: Optional[Path] = None) -> RunConfig:
    settings = load_settings(config_path)

    link = NetworkLink(
        device=_setting(settings, "tap_device", DEFAULT_TAP_DEVICE),
        host_address=_setting(settings, "host_ip", DEFAULT_HOST_IP),
        guest_address=_setting(settings, "guest_ip", DEFAULT_GUEST_IP),
        prefix_len=_int_setting(settings, "prefix_len", DEFAULT_PREFIX_LEN, max_val=30),
    )

    external_interface = _setting(settings, "external_interface", "") or None

    kernel_url = _setting(settings, "kernel_url", DEFAULT_KERNEL_URL)
    if not kernel_url.startswith(("http://", "https://")):
        raise ManagerError(f"KERNEL_URL must be an http(s) URL (got '{kernel_url}')")

    return RunConfig(
        link=link,
        rootfs_size_mb=_int_setting(settings, "rootfs_size_mb", DEFAULT_ROOTFS_SIZE_MB, min_val=16),
        vcpus=_int_setting(settings, "vcpus", DEFAULT_VCPUS, max_val=32),
        memory_mib=_int_setting(settings, "memory_mib", DEFAULT_MEMORY_MIB, min_val=128),
        kernel_url=kernel_url,
        base_image=_setting(settings, "base_image", DEFAULT_BASE_IMAGE),
        workload_binary=Path(_setting(settings, "workload_binary", DEFAULT_WORKLOAD_BINARY)),
        asset_dir=Path(_setting(settings, "asset_dir", DEFAULT_ASSET_DIR)),
        service_port=_int_setting(settings, "service_port", DEFAULT_SERVICE_PORT, max_val=65535),
        download_timeout=_int_setting(settings, "download_timeout", DEFAULT_DOWNLOAD_TIMEOUT),
        external_interface=external_interface,
    )
