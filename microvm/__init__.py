"""microvm-runner package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "host",
    "kernel",
    "models",
    "network",
    "pipeline",
    "prereqs",
    "rootfs",
    "utils",
    "vm",
]
