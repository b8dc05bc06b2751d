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
"""Grub configuration rendering and parsing for the local boot menu.

The local boot menu consists of:
1. one boot entry per installed OS slot, taken from DeviceState.bootloader_entries,
2. the fixed management entries, which boot the INIT-ROOT partition with
    `devinit.action=<MenuChoice>` appended to the kernel cmdline, so that
    devinit started from INIT-ROOT knows which choice the operator made in grub.
"""


from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, List, Optional

from devinit._types import MenuChoice, SlotID
from devinit.configs.cfg import cfg
from devinit.device_state import BootEntry, DeviceState, PartitionDescriptor
from devinit_common._io import write_str_to_file_atomic
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

CMDLINE_ACTION_KEY = "devinit.action"

_SLOT_ENTRY_ID = {
    SlotID.OS1: cfg.OS1_BOOT_ENTRY_ID,
    SlotID.OS2: cfg.OS2_BOOT_ENTRY_ID,
}
_SLOT_ENTRY_LABEL = {
    SlotID.OS1: "Boot OS1 (Primary Ubuntu)",
    SlotID.OS2: "Boot OS2 (Secondary Ubuntu)",
}


@dataclass
class _ManagementEntry:
    choice: MenuChoice
    entry_id: str
    title: str
    extra_cmdline: str = ""


# fmt: off
MANAGEMENT_ENTRIES: List[_ManagementEntry] = [
    _ManagementEntry(MenuChoice.CONFIGURE_DEVICE, "configure-device", "Configure Device"),
    _ManagementEntry(MenuChoice.PARTITION_DISK, "partition-disk", "Partition Disk"),
    _ManagementEntry(MenuChoice.INSTALL_OS1, "install-os1", "Install OS1 (Primary Ubuntu)"),
    _ManagementEntry(MenuChoice.INSTALL_OS2, "install-os2", "Install OS2 (Secondary Ubuntu)"),
    _ManagementEntry(MenuChoice.FACTORY_RESET, "factory-reset", "Factory Reset"),
    _ManagementEntry(MenuChoice.RECONFIGURE_GRUB, "reconfigure-grub", "Reconfigure GRUB"),
]
# fmt: on

ADVANCED_OPTIONS_ID = "advanced-options"
EMERGENCY_SHELL_ID = "emergency-shell"
PXE_BOOT_ID = "pxe-boot"


def get_slot_entry_id(slot: SlotID) -> str:
    return _SLOT_ENTRY_ID[slot]


def make_slot_boot_entry(
    slot: SlotID,
    partition: PartitionDescriptor,
    *,
    is_default: bool = False,
    timeout: int | None = None,
) -> BootEntry:
    """Generate the boot entry for an installed <slot> on <partition>."""
    return BootEntry(
        id=get_slot_entry_id(slot),
        label=_SLOT_ENTRY_LABEL[slot],
        kernel_path=cfg.KERNEL_PATH,
        target_partition=partition.device_node,
        is_default=is_default,
        timeout_seconds=cfg.LOCAL_MENU_TIMEOUT if timeout is None else timeout,
    )


def regenerate_boot_entries(state: DeviceState) -> List[BootEntry]:
    """Regenerate slot boot entries from <state>'s partition table and installed slots.

    Exactly one entry per installed slot, in slot order, the entry of
        <state.default_boot_target> is marked as default if that slot is installed.
    """
    res: List[BootEntry] = []
    for slot in state.installed_slots:
        if (_partition := state.get_partition(slot.role)) is None:
            continue
        res.append(
            make_slot_boot_entry(
                slot, _partition, is_default=slot == state.default_boot_target
            )
        )
    return res


@dataclass
class ParsedMenuEntry:
    title: str
    entry_id: Optional[str]
    cmdline: str = ""

    @property
    def choice(self) -> Optional[MenuChoice]:
        if self.entry_id == cfg.OS1_BOOT_ENTRY_ID:
            return MenuChoice.BOOT_OS1
        if self.entry_id == cfg.OS2_BOOT_ENTRY_ID:
            return MenuChoice.BOOT_OS2
        if self.entry_id == PXE_BOOT_ID:
            return MenuChoice.PXE_BOOT
        if self.entry_id == EMERGENCY_SHELL_ID:
            return MenuChoice.ADVANCED_OPTIONS
        return get_cmdline_action(self.cmdline)


def get_cmdline_action(cmdline: str) -> Optional[MenuChoice]:
    """Get the MenuChoice passed with kernel <cmdline>, if any."""
    for _arg in cmdline.split():
        _key, _, _value = _arg.partition("=")
        if _key != CMDLINE_ACTION_KEY:
            continue
        try:
            return MenuChoice(_value)
        except ValueError:
            logger.warning(f"ignore unknown action in cmdline: {_arg}")
            return


class GrubHelper:
    menuentry_pa: ClassVar[re.Pattern] = re.compile(
        # whole capture group
        r"^(?P<menu_entry>\s*menuentry\s+"
        r"'(?P<title>[^']*)'"  # menuentry title
        r"[^\{]*"  # menuentry options
        r"\{(?P<entry>[^\}]*)\}"  # menuentry block
        r")",  # end of whole capture
        re.MULTILINE | re.DOTALL,
    )
    entry_id_pa: ClassVar[re.Pattern] = re.compile(r"--id\s+(?P<entry_id>[\w\-]+)")
    linux_pa: ClassVar[re.Pattern] = re.compile(
        r"^\s+linux\s+(?P<kernel_path>[^\s]+)\s*(?P<cmdline>.*?)\s*$", re.MULTILINE
    )

    INDENT = "    "
    GRUB_CFG_HEADER = (
        "# This file is generated by devinit, "
        "modification might not be preserved across provisioning."
    )

    @classmethod
    def _render_linux_block(
        cls,
        *,
        title: str,
        entry_id: str,
        fslabel: str,
        kernel_path: str,
        cmdline: str,
        indent: str = "",
    ) -> List[str]:
        _inner = f"{indent}{cls.INDENT}"
        return [
            f"{indent}menuentry '{title}' --class gnu-linux --id {entry_id} {{",
            f"{_inner}search --no-floppy --label --set=root {fslabel}",
            f"{_inner}linux {kernel_path} {cmdline}",
            f"{_inner}initrd {cfg.INITRD_PATH}",
            f"{indent}}}",
        ]

    @classmethod
    def render_grub_cfg(cls, state: DeviceState) -> str:
        """Render the local boot menu grub.cfg from <state>."""
        default_entry = next(
            (_e for _e in state.bootloader_entries if _e.is_default), None
        )
        if default_entry:
            _default_id, _timeout = default_entry.id, default_entry.timeout_seconds
        else:
            _default_id, _timeout = MANAGEMENT_ENTRIES[0].entry_id, cfg.LOCAL_MENU_TIMEOUT

        res = [
            cls.GRUB_CFG_HEADER,
            f"set timeout={_timeout}",
            "set timeout_style=menu",
            f'set default="{_default_id}"',
            "",
            "insmod part_gpt",
            "insmod ext2",
            "insmod fat",
            "",
            # one-shot default set by grub-reboot
            "if [ -s $prefix/grubenv ]; then",
            f"{cls.INDENT}load_env",
            "fi",
            'if [ "${next_entry}" ]; then',
            f'{cls.INDENT}set default="${{next_entry}}"',
            f"{cls.INDENT}set next_entry=",
            f"{cls.INDENT}save_env next_entry",
            "fi",
            "",
        ]

        labels_by_dev = {_p.device_node: _p.label for _p in state.partition_table}
        for _entry in state.bootloader_entries:
            _target = _entry.target_partition or ""
            res.extend(
                cls._render_linux_block(
                    title=_entry.label,
                    entry_id=_entry.id,
                    fslabel=labels_by_dev.get(_target, ""),
                    kernel_path=_entry.kernel_path,
                    cmdline=f"root={_target} ro quiet splash",
                )
            )
            res.append("")

        _init_root = f"root=LABEL={cfg.ROOT_LABEL} ro quiet splash"
        for _mgmt in MANAGEMENT_ENTRIES:
            res.extend(
                cls._render_linux_block(
                    title=_mgmt.title,
                    entry_id=_mgmt.entry_id,
                    fslabel=cfg.ROOT_LABEL,
                    kernel_path=cfg.KERNEL_PATH,
                    cmdline=f"{_init_root} {CMDLINE_ACTION_KEY}={_mgmt.choice}",
                )
            )
            res.append("")

        res.append(f"submenu 'Advanced Options' --id {ADVANCED_OPTIONS_ID} {{")
        res.extend(
            cls._render_linux_block(
                title="Boot to Emergency Shell",
                entry_id=EMERGENCY_SHELL_ID,
                fslabel=cfg.ROOT_LABEL,
                kernel_path=cfg.KERNEL_PATH,
                cmdline=f"{_init_root} init={cfg.DIAGNOSTIC_SHELL}",
                indent=cls.INDENT,
            )
        )
        res.append("}")
        res.append("")

        # leave grub, firmware continues with the next boot option(network boot)
        res.append(f"menuentry 'Network Boot' --id {PXE_BOOT_ID} {{")
        res.append(f"{cls.INDENT}exit")
        res.append("}")
        res.append("")
        return "\n".join(res)

    @classmethod
    def parse_menu_entries(cls, grub_cfg: str) -> List[ParsedMenuEntry]:
        """Parse all menu entries(including the ones in submenu) from <grub_cfg>."""
        res: List[ParsedMenuEntry] = []
        for entry_ma in cls.menuentry_pa.finditer(grub_cfg):
            _whole = entry_ma.group("menu_entry")
            _id_ma = cls.entry_id_pa.search(_whole)
            _linux_ma = cls.linux_pa.search(entry_ma.group("entry"))
            res.append(
                ParsedMenuEntry(
                    title=entry_ma.group("title"),
                    entry_id=_id_ma.group("entry_id") if _id_ma else None,
                    cmdline=_linux_ma.group("cmdline") if _linux_ma else "",
                )
            )
        return res

    @classmethod
    def write_grub_cfg(cls, esp_root: StrOrPath, state: DeviceState) -> Path:
        """Render and write the grub.cfg onto the ESP mounted at <esp_root>."""
        grub_cfg_fpath = Path(esp_root) / cfg.GRUB_CFG_ON_ESP
        grub_cfg_fpath.parent.mkdir(exist_ok=True, parents=True)
        write_str_to_file_atomic(grub_cfg_fpath, cls.render_grub_cfg(state))
        logger.info(f"grub config written to {grub_cfg_fpath}")
        return grub_cfg_fpath
