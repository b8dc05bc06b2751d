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
"""Regenerate the boot entries and rewrite the grub configuration onto the ESP."""


from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from devinit import errors
from devinit._types import PartitionRole
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState
from devinit.grub import GrubHelper, regenerate_boot_entries
from devinit.stages._base import StageBase
from devinit_common import cmdhelper
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)


class ReconfigureGrubStage(StageBase):
    name = "reconfigure-grub"

    def __init__(
        self,
        *,
        esp_mnt: StrOrPath = cfg.ESP_MNT,
        abort_flag: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(abort_flag=abort_flag)
        self.esp_mnt = Path(esp_mnt)

    def run(self, state: DeviceState) -> DeviceState:
        if (esp := state.get_partition(PartitionRole.ESP)) is None:
            _err_msg = f"{self.name}: no ESP in partition table"
            logger.error(_err_msg)
            raise errors.NoSuchPartition(_err_msg, module=__name__)

        new_state = state.copy_for_update()
        new_state.bootloader_entries = regenerate_boot_entries(new_state)
        logger.info(
            f"{self.name}: boot entries regenerated: "
            f"{[_e.id for _e in new_state.bootloader_entries]}"
        )

        self.check_abort("writing bootloader config")
        with self.tool_step("mount ESP"):
            cmdhelper.ensure_mointpoint(self.esp_mnt, ignore_error=False)
            cmdhelper.mount(esp.device_node, self.esp_mnt)
        try:
            with self.tool_step("write bootloader config"):
                GrubHelper.write_grub_cfg(self.esp_mnt, new_state)
        finally:
            cmdhelper.ensure_umount(self.esp_mnt, ignore_error=True)
        return new_state
