# Copyright 2022 TIER IV, INC. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""OS installation stage.

Install a minimal base system into one OS slot, and install/refresh the boot entry
    for the slot. The slot is recorded as installed only after every step succeeded,
    a failed installation can be re-run from scratch as the target partition is
    always re-formatted.
"""


from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional

from devinit import errors
from devinit._types import PartitionRole, SlotID
from devinit.assets import AssetFetcher
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState, PartitionDescriptor
from devinit.grub import GrubHelper, regenerate_boot_entries
from devinit.stages._base import StageBase
from devinit.stages.configure import apply_saved_config
from devinit_common import cmdhelper, replace_root
from devinit_common._io import write_str_to_file_atomic
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

_BOOTLOADER_ID = {
    SlotID.OS1: cfg.OS1_BOOTLOADER_ID,
    SlotID.OS2: cfg.OS2_BOOTLOADER_ID,
}
# pseudo filesystems bind mounted into the target for chroot
_CHROOT_BIND_MOUNTS = ("/dev", "/proc", "/sys")


def render_fstab(
    *,
    root_uuid: str,
    esp_uuid: str,
    swap_uuid: Optional[str],
    data_uuid: Optional[str],
    slot: SlotID,
) -> str:
    res = [
        f"# Filesystem table for {slot}, generated by devinit",
        "# <file system> <mount point> <type> <options> <dump> <pass>",
        f"UUID={root_uuid} / ext4 defaults,noatime 0 1",
        f"UUID={esp_uuid} {cfg.ESP_MOUNT_POINT_IN_SLOT} vfat defaults,noatime 0 2",
    ]
    if swap_uuid:
        res.append(f"UUID={swap_uuid} none swap sw 0 0")
    if data_uuid:
        res.append(f"UUID={data_uuid} {cfg.DATA_MNT} ext4 defaults,noatime 0 2")
    res.append("tmpfs /tmp tmpfs defaults,nodev,nosuid,size=1G 0 0")
    res.append("")
    return "\n".join(res)


def render_apt_sources(mirror: str, release: str) -> str:
    _components = "main restricted universe multiverse"
    return "".join(
        f"deb {mirror} {release}{_suffix} {_components}\n"
        for _suffix in ("", "-updates", "-security", "-backports")
    )


class InstallOSStage(StageBase):
    """Install a minimal base system into <slot>."""

    def __init__(
        self,
        slot: SlotID,
        *,
        mount_point: StrOrPath = cfg.TARGET_SLOT_MNT,
        download_dpath: StrOrPath = cfg.DOWNLOAD_DPATH,
        release: str = cfg.DISTRO_RELEASE,
        mirror: str = cfg.DISTRO_MIRROR,
        arch: str = cfg.DISTRO_ARCH,
        kernel_package: str = cfg.KERNEL_PACKAGE,
        extra_packages: Optional[List[str]] = None,
        root_password: str = cfg.INITIAL_ROOT_PASSWORD,
        rootfs_image_url: Optional[str] = cfg.ROOTFS_IMAGE_URL,
        rootfs_image_sha256: Optional[str] = cfg.ROOTFS_IMAGE_SHA256,
        fetcher: Optional[AssetFetcher] = None,
        abort_flag: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(abort_flag=abort_flag)
        self.slot = SlotID(slot)
        self.name = f"install-{self.slot.lower()}"

        self.mount_point = Path(mount_point)
        self.download_dpath = Path(download_dpath)
        self.release = release
        self.mirror = mirror
        self.arch = arch
        self.kernel_package = kernel_package
        self.extra_packages = (
            list(cfg.EXTRA_PACKAGES) if extra_packages is None else extra_packages
        )
        self.root_password = root_password
        self.rootfs_image_url = rootfs_image_url
        self.rootfs_image_sha256 = rootfs_image_sha256
        self._fetcher = fetcher

    def _get_target_path(self, _canonical: str) -> Path:
        return Path(replace_root(_canonical, cfg.CANONICAL_ROOT, self.mount_point))

    @property
    def esp_mount_point(self) -> Path:
        return self._get_target_path(cfg.ESP_MOUNT_POINT_IN_SLOT)

    def _get_partition(self, state: DeviceState, role: PartitionRole) -> PartitionDescriptor:
        if (_partition := state.get_partition(role)) is None:
            _err_msg = f"{self.name}: {role} partition not found in partition table"
            logger.error(_err_msg)
            raise errors.NoSuchPartition(_err_msg, module=__name__)
        return _partition

    #
    # ------ installation steps ------ #
    #

    def _prepare_clean_target(self, target: PartitionDescriptor) -> None:
        """Ensure neither the target partition nor the mount point is in use."""
        self._cleanup_mounts()
        cmdhelper.ensure_umount(target.device_node, ignore_error=False)
        cmdhelper.ensure_mointpoint(self.mount_point, ignore_error=False)

    def _populate_rootfs(self) -> None:
        if self.rootfs_image_url:
            if self._fetcher is None:
                self._fetcher = AssetFetcher()
            _image = self._fetcher.fetch(
                self.rootfs_image_url,
                self.download_dpath / "rootfs.squashfs",
                digest=self.rootfs_image_sha256,
                stage=self.name,
            )
            try:
                cmdhelper.unsquashfs(_image, self.mount_point)
            finally:
                _image.unlink(missing_ok=True)
            return

        cmdhelper.debootstrap(
            self.release, self.mount_point, self.mirror, arch=self.arch
        )
        _sources = self._get_target_path("/etc/apt/sources.list")
        _sources.parent.mkdir(exist_ok=True, parents=True)
        write_str_to_file_atomic(_sources, render_apt_sources(self.mirror, self.release))

    def _write_fstab(self, state: DeviceState, target: PartitionDescriptor) -> None:
        def _uuid_of(role: PartitionRole) -> Optional[str]:
            if _p := state.get_partition(role):
                return cmdhelper.get_attrs_by_dev("UUID", _p.device_node)

        esp = self._get_partition(state, PartitionRole.ESP)
        _fstab = self._get_target_path(cfg.FSTAB_FPATH)
        _fstab.parent.mkdir(exist_ok=True, parents=True)
        write_str_to_file_atomic(
            _fstab,
            render_fstab(
                root_uuid=cmdhelper.get_attrs_by_dev("UUID", target.device_node),
                esp_uuid=cmdhelper.get_attrs_by_dev("UUID", esp.device_node),
                swap_uuid=_uuid_of(PartitionRole.SWAP),
                data_uuid=_uuid_of(PartitionRole.DATA),
                slot=self.slot,
            ),
        )

    def _setup_chroot(self, esp: PartitionDescriptor) -> None:
        for _pseudo_fs in _CHROOT_BIND_MOUNTS:
            _mp = self._get_target_path(_pseudo_fs)
            _mp.mkdir(exist_ok=True, parents=True)
            cmdhelper.bind_mount(_pseudo_fs, _mp)

        self.esp_mount_point.mkdir(exist_ok=True, parents=True)
        cmdhelper.mount(esp.device_node, self.esp_mount_point)

    def _install_packages(self) -> None:
        cmdhelper.chroot_call(self.mount_point, ["apt-get", "update"])
        cmdhelper.chroot_call(
            self.mount_point,
            [
                "apt-get",
                "install",
                "-y",
                "--no-install-recommends",
                self.kernel_package,
                *self.extra_packages,
            ],
        )

    def _set_root_credential(self) -> None:
        cmdhelper.chroot_call(
            self.mount_point,
            ["chpasswd"],
            input=f"root:{self.root_password}\n".encode(),
        )

    def _apply_saved_config(self, state: DeviceState) -> None:
        if not (saved_config := state.saved_config):
            logger.info(f"{self.name}: no saved config, skip applying")
            return
        apply_saved_config(saved_config, self.mount_point)
        cmdhelper.chroot_call(
            self.mount_point,
            ["systemctl", "enable" if saved_config.ssh_enabled else "disable", "ssh"],
        )

    def _install_bootloader(self) -> None:
        cmdhelper.grub_install(
            self.mount_point,
            efi_directory=cfg.ESP_MOUNT_POINT_IN_SLOT,
            # grub prefix on the ESP, where grub.cfg and grubenv are maintained
            boot_directory=cfg.ESP_MOUNT_POINT_IN_SLOT,
            bootloader_id=_BOOTLOADER_ID[self.slot],
        )

    def _cleanup_mounts(self, *, ignore_error: bool = False) -> None:
        """Umount everything under the mount point, in reverse mounting order."""
        _mounts = [self._get_target_path(_p) for _p in _CHROOT_BIND_MOUNTS]
        _mounts.append(self.esp_mount_point)
        for _mp in reversed(_mounts):
            cmdhelper.ensure_umount(_mp, ignore_error=True)
        cmdhelper.ensure_umount(self.mount_point, ignore_error=ignore_error)

    def _build_new_state(self, state: DeviceState) -> DeviceState:
        new_state = state.copy_for_update()
        # only take over the default if no installed slot is the current default
        if new_state.default_boot_target not in new_state.installed_slots:
            new_state.default_boot_target = self.slot
        if self.slot not in new_state.installed_slots:
            new_state.installed_slots = sorted([*new_state.installed_slots, self.slot])
        new_state.bootloader_entries = regenerate_boot_entries(new_state)
        return new_state

    def run(self, state: DeviceState) -> DeviceState:
        target = self._get_partition(state, self.slot.role)
        esp = self._get_partition(state, PartitionRole.ESP)
        logger.warning(f"{self.name}: start to install {self.slot} onto {target.device_node}")

        self.check_abort("preparing target partition")
        with self.tool_step("prepare target partition"):
            self._prepare_clean_target(target)

        try:
            with self.tool_step("format target partition"):
                cmdhelper.mkfs_ext4(target.device_node, fslabel=target.label)
                cmdhelper.mount(target.device_node, self.mount_point)

            self.check_abort("populating rootfs")
            with self.tool_step("populate rootfs"):
                self._populate_rootfs()

            self.check_abort("configuring target rootfs")
            with self.tool_step("write fstab"):
                self._write_fstab(state, target)
            with self.tool_step("setup chroot"):
                self._setup_chroot(esp)

            self.check_abort("installing packages")
            with self.tool_step("install kernel and packages"):
                self._install_packages()
            with self.tool_step("set root credential"):
                self._set_root_credential()
            with self.tool_step("apply saved config"):
                self._apply_saved_config(state)

            self.check_abort("installing bootloader")
            with self.tool_step("install bootloader"):
                self._install_bootloader()

            new_state = self._build_new_state(state)
            with self.tool_step("write bootloader config"):
                GrubHelper.write_grub_cfg(self.esp_mount_point, new_state)
        except Exception:
            # keep the original failure, cleanup at our best
            self._cleanup_mounts(ignore_error=True)
            raise

        with self.tool_step("cleanup mounts"):
            self._cleanup_mounts()

        logger.info(f"{self.name}: {self.slot} installed")
        return new_state
