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



from __future__ import annotations

from pathlib import Path

import pytest

from devinit._types import MenuChoice, SlotID
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState
from devinit.grub import (
    MANAGEMENT_ENTRIES,
    GrubHelper,
    get_cmdline_action,
    get_slot_entry_id,
    regenerate_boot_entries,
)


class TestRegenerateBootEntries:
    def test_no_installed_slots(self, partitioned_state: DeviceState):
        assert regenerate_boot_entries(partitioned_state) == []

    def test_one_entry_per_installed_slot(self, make_installed_state):
        _state = make_installed_state(SlotID.OS1, SlotID.OS2, default=SlotID.OS2)
        _entries = _state.bootloader_entries

        assert [_e.id for _e in _entries] == [
            cfg.OS1_BOOT_ENTRY_ID,
            cfg.OS2_BOOT_ENTRY_ID,
        ]
        assert [_e.is_default for _e in _entries] == [False, True]
        assert _entries[0].target_partition == "/dev/sda4"
        assert _entries[1].target_partition == "/dev/sda5"
        assert all(_e.timeout_seconds == cfg.LOCAL_MENU_TIMEOUT for _e in _entries)


class TestRenderGrubCfg:
    def test_default_to_installed_slot(self, make_installed_state):
        _state = make_installed_state(SlotID.OS1, SlotID.OS2, default=SlotID.OS2)
        _grub_cfg = GrubHelper.render_grub_cfg(_state)

        assert f'set default="{cfg.OS2_BOOT_ENTRY_ID}"' in _grub_cfg
        assert f"set timeout={cfg.LOCAL_MENU_TIMEOUT}" in _grub_cfg
        assert f"search --no-floppy --label --set=root {cfg.OS1_LABEL}" in _grub_cfg
        assert "linux /boot/vmlinuz root=/dev/sda5 ro quiet splash" in _grub_cfg
        # grub-reboot one-shot support
        assert 'set default="${next_entry}"' in _grub_cfg

    def test_no_installed_slot(self, partitioned_state: DeviceState):
        _grub_cfg = GrubHelper.render_grub_cfg(partitioned_state)

        assert f'set default="{MANAGEMENT_ENTRIES[0].entry_id}"' in _grub_cfg
        assert cfg.OS1_BOOT_ENTRY_ID not in _grub_cfg

    def test_parse_rendered_menu(self, make_installed_state):
        _state = make_installed_state(SlotID.OS1)
        _parsed = GrubHelper.parse_menu_entries(GrubHelper.render_grub_cfg(_state))

        assert [_e.choice for _e in _parsed] == [
            MenuChoice.BOOT_OS1,
            MenuChoice.CONFIGURE_DEVICE,
            MenuChoice.PARTITION_DISK,
            MenuChoice.INSTALL_OS1,
            MenuChoice.INSTALL_OS2,
            MenuChoice.FACTORY_RESET,
            MenuChoice.RECONFIGURE_GRUB,
            MenuChoice.ADVANCED_OPTIONS,
            MenuChoice.PXE_BOOT,
        ]
        assert _parsed[0].entry_id == get_slot_entry_id(SlotID.OS1)
        assert _parsed[0].title == "Boot OS1 (Primary Ubuntu)"

    def test_write_grub_cfg(self, tmp_path: Path, make_installed_state):
        _state = make_installed_state(SlotID.OS2, default=SlotID.OS2)
        _written = GrubHelper.write_grub_cfg(tmp_path, _state)

        assert _written == tmp_path / cfg.GRUB_CFG_ON_ESP
        assert _written.read_text() == GrubHelper.render_grub_cfg(_state)


@pytest.mark.parametrize(
    "cmdline, expected",
    (
        (
            "BOOT_IMAGE=/boot/vmlinuz root=LABEL=INIT-ROOT ro devinit.action=PartitionDisk quiet",
            MenuChoice.PARTITION_DISK,
        ),
        ("root=LABEL=INIT-ROOT devinit.action=InstallOS2", MenuChoice.INSTALL_OS2),
        ("root=LABEL=INIT-ROOT devinit.action=NotAChoice", None),
        ("root=LABEL=INIT-ROOT ro quiet splash", None),
        ("", None),
    ),
)
def test_get_cmdline_action(cmdline, expected):
    assert get_cmdline_action(cmdline) == expected
