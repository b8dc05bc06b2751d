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
from typing import List

import pytest

from devinit import errors
from devinit._types import RecoveryAction, SlotID, StageOutcome
from devinit.configs import FactoryResetMode
from devinit.device_state import DeviceState, DeviceStateStore, SavedConfig
from devinit.grub import regenerate_boot_entries
from devinit.operator import QueueOperator
from devinit.stages.factory_reset import (
    FactoryResetController,
    ResetSlotsStage,
    reset_saved_config,
)
from devinit.supervisor import ErrorRecoverySupervisor, FailureJournal


class _FakeInstall:
    def __init__(self, slot: SlotID, *, fail: bool = False) -> None:
        self.slot = slot
        self.name = f"install-{slot.lower()}"
        self.fail = fail

    def run(self, state: DeviceState) -> DeviceState:
        if self.fail:
            raise errors.ToolInvocationFailed(
                "apt-get failed", module=__name__, stage=self.name, underlying_code=100
            )
        new_state = state.copy_for_update()
        new_state.installed_slots = sorted({*new_state.installed_slots, self.slot})
        if new_state.default_boot_target not in state.installed_slots:
            new_state.default_boot_target = self.slot
        new_state.bootloader_entries = regenerate_boot_entries(new_state)
        return new_state


class _FakePartition:
    name = "partition"

    def __init__(self, partitioned_state: DeviceState) -> None:
        self.partitioned_state = partitioned_state

    def run(self, state: DeviceState) -> DeviceState:
        new_state = self.partitioned_state.copy_for_update()
        new_state.saved_config = state.saved_config
        return new_state


@pytest.mark.parametrize(
    "saved_config, preserve, expected_keys",
    (
        (SavedConfig(hostname="edge", ssh_public_keys=["k1", "k2"]), True, ["k1", "k2"]),
        (SavedConfig(hostname="edge", ssh_public_keys=["k1"]), False, None),
        (SavedConfig(hostname="edge"), True, None),
        (None, True, None),
    ),
)
def test_reset_saved_config(saved_config, preserve, expected_keys):
    _res = reset_saved_config(saved_config, preserve_ssh_keys=preserve)
    if expected_keys is None:
        assert _res is None
    else:
        assert _res and _res.hostname == "edge-device"
        assert _res.ssh_public_keys == expected_keys


def test_reset_slots_stage(make_installed_state):
    _state = make_installed_state(SlotID.OS1, SlotID.OS2)
    _new_state = ResetSlotsStage().run(_state)

    assert _new_state.installed_slots == []
    assert _new_state.bootloader_entries == []
    assert _new_state.partition_table == _state.partition_table


class TestFactoryResetController:
    @pytest.fixture(autouse=True)
    def setup_test(
        self,
        tmp_path: Path,
        store: DeviceStateStore,
        make_installed_state,
        partitioned_state: DeviceState,
        ssh_public_keys: List[str],
    ):
        self.store = store
        self.partitioned_state = partitioned_state
        self.ssh_public_keys = ssh_public_keys

        _state = make_installed_state(SlotID.OS2, default=SlotID.OS2)
        _state.saved_config = SavedConfig(
            hostname="customized", timezone="Asia/Tokyo", ssh_public_keys=ssh_public_keys
        )
        self.store.commit(_state)

        self.journal_fpath = tmp_path / "failure_journal.log"
        self.install_fail = set()

    def _get_controller(
        self, operator: QueueOperator, mode=FactoryResetMode.FULL, preserve=True
    ) -> FactoryResetController:
        _supervisor = ErrorRecoverySupervisor(
            self.store,
            operator,
            journal=FailureJournal(self.journal_fpath),
            shell=lambda: None,
        )
        return FactoryResetController(
            supervisor=_supervisor,
            partition_stage_factory=lambda: _FakePartition(self.partitioned_state),
            install_stage_factory=lambda slot: _FakeInstall(
                slot, fail=slot in self.install_fail
            ),
            mode=mode,
            preserve_ssh_keys=preserve,
        )

    def test_full_reset(self):
        _results = self._get_controller(QueueOperator()).run()

        assert [(_r.stage, _r.outcome) for _r in _results] == [
            ("factory-reset:partition", StageOutcome.SUCCESS),
            ("install-os1", StageOutcome.SUCCESS),
            ("install-os2", StageOutcome.SUCCESS),
        ]
        _state = self.store.load()
        assert _state.installed_slots == [SlotID.OS1, SlotID.OS2]
        assert _state.default_boot_target == SlotID.OS1
        # device specific config is reset, ssh keys are preserved
        assert _state.saved_config
        assert _state.saved_config.hostname == "edge-device"
        assert _state.saved_config.timezone == "UTC"
        assert _state.saved_config.ssh_public_keys == self.ssh_public_keys

    def test_full_reset_drop_ssh_keys(self):
        self._get_controller(QueueOperator(), preserve=False).run()
        assert self.store.load().saved_config is None

    def test_os_only_reset(self):
        _results = self._get_controller(
            QueueOperator(), mode=FactoryResetMode.OS_ONLY
        ).run()

        assert _results[0].stage == "factory-reset:reset-slots"
        assert all(_r.outcome == StageOutcome.SUCCESS for _r in _results)
        _state = self.store.load()
        assert _state.installed_slots == [SlotID.OS1, SlotID.OS2]
        assert _state.partition_table == self.partitioned_state.partition_table

    def test_skip_failed_sub_stage(self):
        self.install_fail.add(SlotID.OS1)
        _operator = QueueOperator(recoveries=[RecoveryAction.SKIP])

        _results = self._get_controller(_operator).run()

        assert [(_r.stage, _r.outcome, _r.action) for _r in _results] == [
            ("factory-reset:partition", StageOutcome.SUCCESS, None),
            ("install-os1", StageOutcome.FAILED, RecoveryAction.SKIP),
            ("install-os2", StageOutcome.SUCCESS, None),
        ]
        assert _operator.recovery_prompts == ["install-os1"]
        assert self.store.load().installed_slots == [SlotID.OS2]

    def test_reboot_stops_sequence(self):
        self.install_fail.add(SlotID.OS1)
        _operator = QueueOperator(recoveries=[RecoveryAction.REBOOT])

        _results = self._get_controller(_operator).run()

        assert len(_results) == 2
        assert _results[-1].action == RecoveryAction.REBOOT
        assert self.store.load().installed_slots == []
        assert self.journal_fpath.is_file()
