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
from pytest_mock import MockerFixture

from devinit._types import SlotID
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState
from devinit.errors import NoSuchPartition, ToolInvocationFailed
from devinit.stages import bootloader
from devinit.stages.bootloader import ReconfigureGrubStage

MODULE = bootloader.__name__


class TestReconfigureGrubStage:
    @pytest.fixture(autouse=True)
    def mock_setup(self, tmp_path: Path, mocker: MockerFixture):
        self.esp_mnt = tmp_path / "esp"
        self.cmdhelper = mocker.patch(f"{MODULE}.cmdhelper")
        self.stage = ReconfigureGrubStage(esp_mnt=self.esp_mnt)

    def test_reconfigure(self, make_installed_state):
        _state = make_installed_state(SlotID.OS1, SlotID.OS2, default=SlotID.OS2)
        # simulate lost boot entries
        _state.bootloader_entries = []

        _new_state = self.stage.run(_state)

        assert [(_e.id, _e.is_default) for _e in _new_state.bootloader_entries] == [
            (cfg.OS1_BOOT_ENTRY_ID, False),
            (cfg.OS2_BOOT_ENTRY_ID, True),
        ]
        self.cmdhelper.mount.assert_called_once_with("/dev/sda1", self.esp_mnt)
        self.cmdhelper.ensure_umount.assert_called_once_with(
            self.esp_mnt, ignore_error=True
        )
        _grub_cfg = (self.esp_mnt / cfg.GRUB_CFG_ON_ESP).read_text()
        assert f'set default="{cfg.OS2_BOOT_ENTRY_ID}"' in _grub_cfg

    def test_no_slot_installed(self, partitioned_state: DeviceState):
        _new_state = self.stage.run(partitioned_state)

        assert _new_state.bootloader_entries == []
        assert (self.esp_mnt / cfg.GRUB_CFG_ON_ESP).is_file()

    def test_no_esp(self):
        with pytest.raises(NoSuchPartition):
            self.stage.run(DeviceState())
        self.cmdhelper.mount.assert_not_called()

    def test_mount_failed(self, partitioned_state: DeviceState):
        self.cmdhelper.mount.side_effect = OSError("mount failed")

        with pytest.raises(ToolInvocationFailed):
            self.stage.run(partitioned_state)
