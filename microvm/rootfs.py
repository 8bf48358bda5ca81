"""Root filesystem assembly for microvm-runner."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import textwrap
from pathlib import Path
from typing import Optional

from microvm.constants import (
    DEFAULT_BASE_IMAGE,
    GUEST_ASSET_DIR,
    GUEST_ASSET_ROOT,
    GUEST_BIN_DIR,
    GUEST_IFACE,
    GUEST_INIT_PATH,
    ROOTFS_PATH,
    WORK_ROOT,
)
from microvm.exceptions import BuildError
from microvm.host import HostCommands
from microvm.models import NetworkLink, RootfsImage
from microvm.utils import ensure_directory, log

MIB = 1024 * 1024


def render_init_script(link: NetworkLink, binary_name: str) -> str:
    """Guest PID 1: mount pseudo-filesystems, configure eth0, exec the workload."""
    return textwrap.dedent(
        f"""\
        #!/bin/sh
        mount -t proc proc /proc
        mount -t sysfs sysfs /sys
        mount -t devtmpfs devtmpfs /dev

        # Configure network
        ip addr add {link.guest_cidr} dev {GUEST_IFACE}
        ip link set {GUEST_IFACE} up
        ip route add default via {link.host_address}

        # Start server
        cd {GUEST_ASSET_ROOT}
        exec {GUEST_BIN_DIR}/{binary_name}
        """
    )


def _guest_path(tree: Path, guest_path: str) -> Path:
    return tree / guest_path.lstrip("/")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        detail = (exc.stderr or exc.output or "").strip()
        cmd = " ".join(exc.cmd) if isinstance(exc.cmd, (list, tuple)) else str(exc.cmd)
        return f"'{cmd}' exited with {exc.returncode}" + (f": {detail}" if detail else "")
    return str(exc)


class RootfsBuilder:
    """Builds a fixed-size ext4 image around a prebuilt workload.

    The workspace is left in place when a step fails so the partial tree can
    be inspected; removing it is the job of the teardown sequence.
    """

    def __init__(
        self,
        host: HostCommands,
        link: NetworkLink,
        base_image: str = DEFAULT_BASE_IMAGE,
        work_root: Path = WORK_ROOT,
    ) -> None:
        self.host = host
        self.link = link
        self.base_image = base_image
        self.work_root = work_root
        self.workspace: Optional[Path] = None

    def build(self, workload_binary: Path, asset_dir: Path, size_mb: int, dest: Path = ROOTFS_PATH) -> RootfsImage:
        if size_mb < 1:
            raise BuildError("image-allocate", f"image size must be at least 1 MiB (got {size_mb})")
        log("INFO", "Building rootfs image...")
        workspace = self._create_workspace()
        tree = workspace / "rootfs"
        image = workspace / "rootfs.ext4"
        mount_point = workspace / "mnt"

        self._step("base-export", self._export_base, tree)
        self._step("copy-payload", self._copy_payload, tree, workload_binary, asset_dir)
        self._step("bootstrap", self._write_init, tree, workload_binary.name)
        self._step("image-allocate", self._allocate_image, image, size_mb)
        self._step("image-format", self.host.make_filesystem, image)
        self._populate_image(image, mount_point, tree)
        self._step("publish", self._publish, image, dest)

        log("SUCCESS", f"Rootfs built: {dest} ({size_mb} MiB)")
        return RootfsImage(path=dest, size_mb=size_mb, workspace=workspace, link=self.link)

    def _step(self, name: str, func, *args) -> None:
        log("DEBUG", f"Rootfs step: {name}")
        try:
            func(*args)
        except BuildError:
            raise
        except (OSError, subprocess.SubprocessError) as exc:
            raise BuildError(name, _describe(exc)) from exc

    def _create_workspace(self) -> Path:
        try:
            ensure_directory(self.work_root)
            workspace = Path(tempfile.mkdtemp(prefix="run-", dir=self.work_root))
        except OSError as exc:
            raise BuildError("workspace-create", exc) from exc
        self.workspace = workspace
        log("INFO", f"Workspace: {workspace}")
        return workspace

    def _export_base(self, tree: Path) -> None:
        log("INFO", f"Exporting base filesystem from {self.base_image}...")
        ensure_directory(tree)
        self.host.export_base_image(self.base_image, tree)

    def _copy_payload(self, tree: Path, workload_binary: Path, asset_dir: Path) -> None:
        if not workload_binary.is_file():
            raise BuildError("copy-payload", f"workload binary not found: {workload_binary}")
        if not asset_dir.is_dir():
            raise BuildError("copy-payload", f"asset directory not found: {asset_dir}")

        bin_dir = _guest_path(tree, GUEST_BIN_DIR)
        ensure_directory(bin_dir)
        target = bin_dir / workload_binary.name
        shutil.copyfile(workload_binary, target)
        target.chmod(0o755)

        shutil.copytree(asset_dir, _guest_path(tree, GUEST_ASSET_DIR), dirs_exist_ok=True)

    def _write_init(self, tree: Path, binary_name: str) -> None:
        init_path = _guest_path(tree, GUEST_INIT_PATH)
        init_path.write_text(render_init_script(self.link, binary_name))
        init_path.chmod(0o755)

    def _allocate_image(self, image: Path, size_mb: int) -> None:
        log("INFO", f"Creating ext4 image ({size_mb} MiB)...")
        with open(image, "wb") as f:
            f.truncate(size_mb * MIB)

    def _populate_image(self, image: Path, mount_point: Path, tree: Path) -> None:
        self._step("image-mount", self._mount, image, mount_point)
        try:
            self._step("image-populate", self.host.copy_tree, tree, mount_point)
        except BuildError:
            try:
                self.host.umount(mount_point)
            except (OSError, subprocess.SubprocessError) as exc:
                log("WARN", f"Could not unmount {mount_point}: {_describe(exc)}")
            raise
        self._step("image-unmount", self.host.umount, mount_point)

    def _mount(self, image: Path, mount_point: Path) -> None:
        ensure_directory(mount_point)
        self.host.mount(image, mount_point)

    def _publish(self, image: Path, dest: Path) -> None:
        ensure_directory(dest.parent)
        tmp = dest.with_name(f".{dest.name}.tmp")
        try:
            shutil.copyfile(image, tmp)
            os.replace(tmp, dest)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise


def build_rootfs(
    workload_binary: Path,
    asset_dir: Path,
    size_mb: int,
    link: NetworkLink,
    *,
    host: Optional[HostCommands] = None,
    dest: Path = ROOTFS_PATH,
    work_root: Path = WORK_ROOT,
    base_image: str = DEFAULT_BASE_IMAGE,
) -> RootfsImage:
    builder = RootfsBuilder(host or HostCommands(), link, base_image=base_image, work_root=work_root)
    return builder.build(Path(workload_binary), Path(asset_dir), size_mb, dest=dest)
