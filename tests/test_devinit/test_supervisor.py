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

import json
import subprocess
from pathlib import Path
from typing import List, Optional

import pytest
from pytest_mock import MockerFixture

from devinit import errors
from devinit._types import RecoveryAction, StageOutcome
from devinit.device_state import DeviceState, DeviceStateStore, SavedConfig
from devinit.operator import QueueOperator
from devinit.stages._base import StageBase
from devinit.supervisor import RECOVERY_ACTIONS, ErrorRecoverySupervisor, FailureJournal


class _FlakyStage:
    """Fails with the queued exceptions first, then sets the hostname."""

    name = "flaky"

    def __init__(self, failures: Optional[List[Exception]] = None) -> None:
        self.failures = list(failures or [])
        self.runs: List[DeviceState] = []

    def run(self, state: DeviceState) -> DeviceState:
        self.runs.append(state)
        if self.failures:
            raise self.failures.pop(0)
        new_state = state.copy_for_update()
        new_state.saved_config = SavedConfig(hostname="flaky-ok")
        return new_state


class _InterruptedToolStage(StageBase):
    """The running tool is interrupted by the operator abort."""

    name = "interrupted"

    def __init__(self, supervisor: ErrorRecoverySupervisor) -> None:
        super().__init__(abort_flag=supervisor.abort_flag)
        self.supervisor = supervisor

    def run(self, state: DeviceState) -> DeviceState:
        with self.tool_step("format partition"):
            self.supervisor.request_abort()
            raise subprocess.CalledProcessError(130, ["mkfs.ext4", "/dev/sda4"])


def _tool_failed() -> errors.ToolInvocationFailed:
    return errors.ToolInvocationFailed(
        "mkfs failed", module=__name__, stage="flaky", underlying_code=1
    )


class TestErrorRecoverySupervisor:
    @pytest.fixture(autouse=True)
    def setup_test(self, tmp_path: Path, store: DeviceStateStore, mocker: MockerFixture):
        self.store = store
        self.journal_fpath = tmp_path / "journal.log"
        self.shell = mocker.MagicMock()

    def _get_supervisor(self, operator: QueueOperator) -> ErrorRecoverySupervisor:
        return ErrorRecoverySupervisor(
            self.store,
            operator,
            journal=FailureJournal(self.journal_fpath),
            shell=self.shell,
        )

    def _journal_entries(self) -> List[dict]:
        if not self.journal_fpath.is_file():
            return []
        return [json.loads(_l) for _l in self.journal_fpath.read_text().splitlines()]

    def test_success(self):
        _operator = QueueOperator()
        _res = self._get_supervisor(_operator).run_stage(_FlakyStage())

        assert _res.outcome == StageOutcome.SUCCESS
        assert _res.action is None
        assert _res.attempts == 1
        _state = self.store.load()
        assert _state.saved_config and _state.saved_config.hostname == "flaky-ok"
        assert _operator.recovery_prompts == []
        assert self._journal_entries() == []

    def test_retry_then_success(self):
        _operator = QueueOperator(recoveries=[RecoveryAction.RETRY])
        _stage = _FlakyStage([_tool_failed()])

        _res = self._get_supervisor(_operator).run_stage(_stage)

        assert _res.outcome == StageOutcome.SUCCESS
        assert _res.attempts == 2
        # retry starts from the same persisted state
        assert _stage.runs[0] == _stage.runs[1]

        (_entry,) = self._journal_entries()
        assert _entry["stage"] == "flaky"
        assert _entry["outcome"] == "FAILED"
        assert _entry["errcode"] == "E300"
        assert _entry["attempt"] == 1

    def test_skip(self):
        _operator = QueueOperator(recoveries=[RecoveryAction.SKIP])
        _res = self._get_supervisor(_operator).run_stage(_FlakyStage([_tool_failed()]))

        assert _res.outcome == StageOutcome.FAILED
        assert _res.action == RecoveryAction.SKIP
        assert "E300" in _res.failure_reason
        # nothing is committed for a failed stage
        assert self.store.load() == DeviceState()

    def test_shell_then_reboot(self):
        _operator = QueueOperator(
            recoveries=[RecoveryAction.SHELL, RecoveryAction.SHELL, RecoveryAction.REBOOT]
        )
        _res = self._get_supervisor(_operator).run_stage(_FlakyStage([_tool_failed()]))

        assert self.shell.call_count == 2
        assert _res.action == RecoveryAction.REBOOT
        # the same failure is prompted again after the shell exits
        assert _operator.recovery_prompts == ["flaky"] * 3

    def test_aborted(self):
        _operator = QueueOperator()
        _aborted = errors.StageAborted("aborted", module=__name__)

        _res = self._get_supervisor(_operator).run_stage(_FlakyStage([_aborted]))

        assert _res.outcome == StageOutcome.ABORTED
        assert _res.action == RecoveryAction.REBOOT
        # no recovery prompt for an aborted stage
        assert _operator.recovery_prompts == []
        (_entry,) = self._journal_entries()
        assert _entry["outcome"] == "ABORTED"
        assert _entry["errcode"] == "E400"

    def test_aborted_while_tool_running(self):
        _operator = QueueOperator(recoveries=[RecoveryAction.RETRY])
        _supervisor = self._get_supervisor(_operator)

        _res = _supervisor.run_stage(_InterruptedToolStage(_supervisor))

        assert _res.outcome == StageOutcome.ABORTED
        assert _res.action == RecoveryAction.REBOOT
        assert _operator.recovery_prompts == []
        assert self.store.load() == DeviceState()
        (_entry,) = self._journal_entries()
        assert _entry["outcome"] == "ABORTED"

    def test_unexpected_exception_wrapped(self):
        _operator = QueueOperator(recoveries=[RecoveryAction.SKIP])
        _res = self._get_supervisor(_operator).run_stage(
            _FlakyStage([KeyError("unexpected")])
        )

        assert _res.outcome == StageOutcome.FAILED
        assert _res.failure_reason.startswith("E000")
        (_entry,) = self._journal_entries()
        assert _entry["failure_type"] == "UNRECOVERABLE"

    def test_commit_failure(self, mocker: MockerFixture):
        _operator = QueueOperator(recoveries=[RecoveryAction.SKIP])
        mocker.patch.object(
            self.store,
            "commit",
            side_effect=errors.DeviceStateCommitFailed("disk full", module=__name__),
        )
        _res = self._get_supervisor(_operator).run_stage(_FlakyStage())

        assert _res.outcome == StageOutcome.FAILED
        assert _res.failure_reason.startswith("E302")

    def test_abort_flag_cleared_for_each_attempt(self):
        _operator = QueueOperator(recoveries=[RecoveryAction.RETRY])
        _supervisor = self._get_supervisor(_operator)
        _supervisor.request_abort()

        _stage = _FlakyStage([_tool_failed()])
        _res = _supervisor.run_stage(_stage)
        assert _res.outcome == StageOutcome.SUCCESS
        assert not _supervisor.abort_flag.is_set()


def test_recovery_actions():
    assert RECOVERY_ACTIONS == [
        RecoveryAction.RETRY,
        RecoveryAction.SKIP,
        RecoveryAction.REBOOT,
        RecoveryAction.SHELL,
    ]


def test_failure_journal_never_raises(tmp_path: Path):
    # parent is a file, appending must fail
    _blocker = tmp_path / "blocker"
    _blocker.write_text("")
    _journal = FailureJournal(_blocker / "journal.log")

    _journal.record(
        stage="partition",
        outcome=StageOutcome.FAILED,
        failure=errors.InsufficientDiskSpace("too small", module=__name__),
        attempt=1,
    )
