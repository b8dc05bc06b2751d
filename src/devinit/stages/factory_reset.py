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
"""Factory reset, a composite of partitioning and installation of both OS slots.

Each sub-stage is supervised independently:
1. if operator chooses Skip on a failed sub-stage, factory reset continues with the next one,
2. if operator chooses Reboot(or the sub-stage is aborted), the sequence stops.

Two modes are supported:
1. full: re-partition the disk, then install OS1 and OS2.
2. os-only: keep the partition table and the Data partition, reset the slots
    and reinstall OS1 and OS2.
"""


from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, List, Optional

from devinit._types import RecoveryAction, SlotID, StageOutcome, StageResult
from devinit.configs import FactoryResetMode
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState, SavedConfig
from devinit.stages._base import StageBase, StageProtocol

if TYPE_CHECKING:
    from devinit.supervisor import ErrorRecoverySupervisor

logger = logging.getLogger(__name__)


def reset_saved_config(
    saved_config: Optional[SavedConfig], *, preserve_ssh_keys: bool
) -> Optional[SavedConfig]:
    """Reset the device specific config.

    With <preserve_ssh_keys>, the default device config carrying the previous
        ssh public keys is returned, or None if there is no key to preserve.
    """
    if not preserve_ssh_keys or not saved_config or not saved_config.ssh_public_keys:
        return None
    return SavedConfig.default_config(ssh_public_keys=saved_config.ssh_public_keys)


class _ResetConfigAfterStage(StageBase):
    """Run <inner> stage, then reset the saved config on the resulting state.

    Both changes are committed together.
    """

    def __init__(self, inner: StageProtocol, *, preserve_ssh_keys: bool) -> None:
        self.inner = inner
        self.name = f"factory-reset:{inner.name}"
        self.preserve_ssh_keys = preserve_ssh_keys

    def run(self, state: DeviceState) -> DeviceState:
        new_state = self.inner.run(state)
        new_state.saved_config = reset_saved_config(
            new_state.saved_config, preserve_ssh_keys=self.preserve_ssh_keys
        )
        return new_state


class ResetSlotsStage(StageBase):
    """Forget the installed slots and their boot entries, keep the partition table."""

    name = "reset-slots"

    def __init__(self, *, abort_flag: Optional[threading.Event] = None) -> None:
        super().__init__(abort_flag=abort_flag)

    def run(self, state: DeviceState) -> DeviceState:
        self.check_abort("resetting slots")
        new_state = state.copy_for_update()
        new_state.installed_slots = []
        new_state.bootloader_entries = []
        return new_state


class FactoryResetController:
    """Run the factory reset sequence, each sub-stage under <supervisor>."""

    def __init__(
        self,
        *,
        supervisor: ErrorRecoverySupervisor,
        partition_stage_factory: Callable[[], StageProtocol],
        install_stage_factory: Callable[[SlotID], StageProtocol],
        mode: FactoryResetMode = FactoryResetMode.FULL,
        preserve_ssh_keys: bool = cfg.FACTORY_RESET_PRESERVE_SSH_KEYS,
    ) -> None:
        self.supervisor = supervisor
        self._partition_stage_factory = partition_stage_factory
        self._install_stage_factory = install_stage_factory
        self.mode = FactoryResetMode(mode)
        self.preserve_ssh_keys = preserve_ssh_keys

    def get_stages(self) -> List[StageProtocol]:
        """Build the sub-stages of the sequence, in running order."""
        if self.mode == FactoryResetMode.FULL:
            _first = self._partition_stage_factory()
        else:
            _first = ResetSlotsStage(abort_flag=self.supervisor.abort_flag)
        return [
            _ResetConfigAfterStage(_first, preserve_ssh_keys=self.preserve_ssh_keys),
            self._install_stage_factory(SlotID.OS1),
            self._install_stage_factory(SlotID.OS2),
        ]

    def run(self, stages: Optional[List[StageProtocol]] = None) -> List[StageResult]:
        if stages is None:
            stages = self.get_stages()
        logger.warning(f"start factory reset ({self.mode=})")
        results: List[StageResult] = []
        for _stage in stages:
            _res = self.supervisor.run_stage(_stage)
            results.append(_res)

            if _res.outcome == StageOutcome.SUCCESS:
                continue
            if _res.action == RecoveryAction.SKIP:
                logger.warning(f"{_stage.name} skipped, continue factory reset")
                continue
            logger.warning(f"factory reset stopped at {_stage.name}: {_res.action=}")
            break
        return results
