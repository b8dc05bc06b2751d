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
"""Disk partitioning stage.

The disk is partitioned with GPT as follow:
    1: ESP, FAT32, 512MiB
    2: Root(INIT-ROOT), ext4, 2GiB, the management environment
    3: Swap, by swap size policy
    4: OS1, ext4, 3.7GiB
    5: OS2, ext4, 3.7GiB
    6: Data, ext4, the remaining space

A 1MiB gap is left at the beginning of the disk for alignment, and 1MiB is reserved
    at the end of the disk for the GPT backup header.
"""


from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import List, NamedTuple, Optional

from devinit import errors
from devinit._types import Filesystem, PartitionRole
from devinit.configs import SwapSizePolicy
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState, PartitionDescriptor
from devinit.stages._base import StageBase
from devinit_common import bytes_to, cmdhelper, to_bytes
from devinit_common._io import write_str_to_file_atomic
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

MiB = 1024**2
_PARTED_FS_TYPE = {
    Filesystem.FAT32: "fat32",
    Filesystem.EXT4: "ext4",
    Filesystem.SWAP: "linux-swap",
}


class _PartitionSpec(NamedTuple):
    role: PartitionRole
    size_mib: int
    filesystem: Filesystem
    label: str


def get_partition_device_node(disk: str, partnum: int) -> str:
    """Get the device node of partition <partnum> of <disk>.

    For example, /dev/sda -> /dev/sda1, /dev/nvme0n1 -> /dev/nvme0n1p1,
        /dev/mmcblk0 -> /dev/mmcblk0p1.
    """
    if disk[-1].isdigit():
        return f"{disk}p{partnum}"
    return f"{disk}{partnum}"


def get_total_memory_mib(meminfo_fpath: StrOrPath = cfg.PROC_MEMINFO) -> int:
    """Read MemTotal from /proc/meminfo, in MiB."""
    for _line in Path(meminfo_fpath).read_text().splitlines():
        _key, _, _value = _line.partition(":")
        if _key.strip() == "MemTotal":
            # the value is in kB
            return int(_value.split()[0]) // 1024
    raise ValueError(f"MemTotal not found in {meminfo_fpath}")


def get_swap_size_mib(
    policy: SwapSizePolicy, *, meminfo_fpath: StrOrPath = cfg.PROC_MEMINFO
) -> int:
    """Get the swap size for <policy>.

    fixed: SWAP_MAX_SIZE_MIB.
    ram: 2 x RAM, capped at SWAP_MAX_SIZE_MIB.
    """
    if SwapSizePolicy(policy) == SwapSizePolicy.RAM:
        return min(2 * get_total_memory_mib(meminfo_fpath), cfg.SWAP_MAX_SIZE_MIB)
    return cfg.SWAP_MAX_SIZE_MIB


def compute_layout(
    disk: str, disk_size_bytes: int, *, swap_size_mib: int
) -> List[PartitionDescriptor]:
    """Compute the partition layout of <disk> in a single pass.

    Raises:
        InsufficientDiskSpace if no space is left for the Data partition.
    """
    # fmt: off
    fixed_specs = [
        _PartitionSpec(PartitionRole.ESP, cfg.ESP_SIZE_MIB, Filesystem.FAT32, cfg.ESP_LABEL),
        _PartitionSpec(PartitionRole.ROOT, cfg.ROOT_SIZE_MIB, Filesystem.EXT4, cfg.ROOT_LABEL),
        _PartitionSpec(PartitionRole.SWAP, swap_size_mib, Filesystem.SWAP, cfg.SWAP_LABEL),
        _PartitionSpec(PartitionRole.OS1, cfg.OS_SLOT_SIZE_MIB, Filesystem.EXT4, cfg.OS1_LABEL),
        _PartitionSpec(PartitionRole.OS2, cfg.OS_SLOT_SIZE_MIB, Filesystem.EXT4, cfg.OS2_LABEL),
    ]
    # fmt: on

    disk_size_mib = disk_size_bytes // MiB
    data_size_mib = (
        disk_size_mib
        - cfg.ALIGNMENT_GAP_MIB
        - sum(_spec.size_mib for _spec in fixed_specs)
        - cfg.GPT_BACKUP_RESERVE_MIB
    )
    if data_size_mib <= 0:
        _err_msg = (
            f"{disk} ({disk_size_mib}MiB) is too small for the partition layout, "
            f"{-data_size_mib}MiB more is required at least"
        )
        logger.error(_err_msg)
        raise errors.InsufficientDiskSpace(_err_msg, module=__name__)
    if data_size_mib < cfg.DATA_WARN_SIZE_MIB:
        logger.warning(f"Data partition will be very small: {data_size_mib}MiB")

    specs = [
        *fixed_specs,
        _PartitionSpec(PartitionRole.DATA, data_size_mib, Filesystem.EXT4, cfg.DATA_LABEL),
    ]
    res: List[PartitionDescriptor] = []
    start_mib = cfg.ALIGNMENT_GAP_MIB
    for partnum, _spec in enumerate(specs, start=1):
        res.append(
            PartitionDescriptor(
                role=_spec.role,
                size_bytes=to_bytes(_spec.size_mib, "MiB"),
                filesystem=_spec.filesystem,
                device_node=get_partition_device_node(disk, partnum),
                start_bytes=to_bytes(start_mib, "MiB"),
                label=_spec.label,
            )
        )
        start_mib += _spec.size_mib
    return res


def render_partition_report(disk: str, layout: List[PartitionDescriptor]) -> str:
    res = [
        "# Disk Partitioning Information",
        f"# Generated on {time.strftime('%Y-%m-%d %H:%M:%S')}",
        f"# Target disk: {disk}",
        "",
        f"{'DEVICE':<20}{'ROLE':<6}{'LABEL':<12}{'FS':<8}{'START(MiB)':>12}{'SIZE(MiB)':>12}",
    ]
    for _p in layout:
        res.append(
            f"{_p.device_node:<20}{_p.role:<6}{_p.label:<12}{_p.filesystem:<8}"
            f"{_p.start_bytes // MiB:>12}{_p.size_bytes // MiB:>12}"
        )
    res.append("")
    return "\n".join(res)


class PartitionDiskStage(StageBase):
    """Destructively recreate the fixed 6-partitions scheme on <disk>.

    The destructive intent on <disk> must have been confirmed by the caller.
    """

    name = "partition"

    def __init__(
        self,
        disk: str,
        *,
        swap_size_policy: SwapSizePolicy = cfg.SWAP_SIZE_POLICY,
        data_mnt: StrOrPath = cfg.DATA_MNT,
        report_dpath: StrOrPath = cfg.RUN_DIR,
        abort_flag: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(abort_flag=abort_flag)
        self.disk = disk
        self.swap_size_policy = swap_size_policy
        self.data_mnt = Path(data_mnt)
        self.report_dpath = Path(report_dpath)

    def _release_disk(self) -> None:
        """Deactivate swap and umount all partitions on the disk."""
        for _dev in cmdhelper.get_device_tree(self.disk)[1:]:
            cmdhelper.swapoff(_dev)
            cmdhelper.ensure_umount(_dev, ignore_error=False)

    def _create_partition_table(self, layout: List[PartitionDescriptor]) -> None:
        cmdhelper.wipefs(self.disk)
        cmdhelper.parted_mklabel_gpt(self.disk)
        for _p in layout:
            _start_mib = _p.start_bytes // MiB
            cmdhelper.parted_mkpart(
                self.disk,
                name=_p.label,
                fs_type=_PARTED_FS_TYPE[_p.filesystem],
                start_mib=_start_mib,
                end_mib=_start_mib + _p.size_bytes // MiB,
            )
        cmdhelper.parted_set_esp(self.disk, 1)
        cmdhelper.partprobe(self.disk)

    def _format_partitions(self, layout: List[PartitionDescriptor]) -> None:
        for _p in layout:
            if _p.filesystem == Filesystem.FAT32:
                cmdhelper.mkfs_fat32(_p.device_node, fslabel=_p.label)
            elif _p.filesystem == Filesystem.SWAP:
                cmdhelper.mkswap(_p.device_node, fslabel=_p.label)
            else:
                cmdhelper.mkfs_ext4(_p.device_node, fslabel=_p.label)

    def _mount_data_partition(self, data_partition: PartitionDescriptor) -> None:
        """Mount the new Data partition, the device state is persisted on it."""
        cmdhelper.ensure_mointpoint(self.data_mnt, ignore_error=False)
        cmdhelper.mount(data_partition.device_node, self.data_mnt)
        (self.data_mnt / "devinit").mkdir(exist_ok=True, parents=True)

    def _save_report(self, layout: List[PartitionDescriptor]) -> None:
        _report = render_partition_report(self.disk, layout)
        logger.info(f"partition layout: \n{_report}")
        try:
            self.report_dpath.mkdir(exist_ok=True, parents=True)
            write_str_to_file_atomic(self.report_dpath / "partition-info.txt", _report)
        except OSError as e:
            logger.warning(f"failed to save partition report: {e!r}")

    def run(self, state: DeviceState) -> DeviceState:
        with self.tool_step("query disk size"):
            disk_size_bytes = cmdhelper.get_disk_size_in_bytes(self.disk)
        with self.tool_step("query memory size"):
            swap_size_mib = get_swap_size_mib(self.swap_size_policy)

        # layout is computed before any destructive operation
        layout = compute_layout(
            self.disk, disk_size_bytes, swap_size_mib=swap_size_mib
        )
        logger.warning(
            f"start to partition {self.disk} "
            f"({bytes_to(disk_size_bytes, 'GiB'):.1f}GiB)"
        )

        self.check_abort("releasing disk")
        with self.tool_step("release disk"):
            self._release_disk()

        self.check_abort("creating partition table")
        with self.tool_step("create partition table"):
            self._create_partition_table(layout)

        self.check_abort("formatting partitions")
        with self.tool_step("format partitions"):
            self._format_partitions(layout)

        data_partition = next(_p for _p in layout if _p.role == PartitionRole.DATA)
        with self.tool_step("mount data partition"):
            self._mount_data_partition(data_partition)
        self._save_report(layout)

        new_state = state.copy_for_update()
        new_state.partition_table = layout
        new_state.disk_device = self.disk
        new_state.disk_size_bytes = disk_size_bytes
        new_state.installed_slots = []
        # slot boot entries point to the wiped partitions
        new_state.bootloader_entries = []
        return new_state
