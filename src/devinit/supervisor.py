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
"""Error/recovery supervisor that brackets every stage execution.

The supervisor:
1. runs the stage against the currently persisted DeviceState,
2. commits the returned DeviceState on success,
3. on failure, records the failure into the failure journal and asks the operator
    for a recovery action. Only the operator can trigger a retry.
"""


from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from typing_extensions import Protocol

from devinit import errors
from devinit._types import RecoveryAction, StageOutcome, StageResult
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState, DeviceStateStore
from devinit.stages._base import StageProtocol
from devinit_common._io import append_line_to_file
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

RECOVERY_ACTIONS = [
    RecoveryAction.RETRY,
    RecoveryAction.SKIP,
    RecoveryAction.REBOOT,
    RecoveryAction.SHELL,
]


class RecoveryPrompt(Protocol):
    def choose_recovery(
        self, stage: str, failure_reason: str, actions: List[RecoveryAction]
    ) -> RecoveryAction: ...


def spawn_diagnostic_shell() -> None:  # pragma: no cover
    """Hand the console over to an interactive shell, return when it exits."""
    logger.warning(f"spawn diagnostic shell {cfg.DIAGNOSTIC_SHELL}")
    try:
        subprocess.run([cfg.DIAGNOSTIC_SHELL], check=False)
    except OSError as e:
        logger.error(f"failed to spawn diagnostic shell: {e!r}")


class FailureJournal:
    """Append-only journal of stage failures, one JSON object per line."""

    def __init__(self, fpath: StrOrPath = cfg.FAILURE_JOURNAL_FPATH) -> None:
        self.fpath = Path(fpath)

    def record(
        self,
        *,
        stage: str,
        outcome: StageOutcome,
        failure: errors.ProvisionError,
        attempt: int,
    ) -> None:
        """Append one failure record, a journal fault is logged but never raised."""
        _entry = {
            "timestamp": int(time.time()),
            "stage": stage,
            "outcome": str(outcome),
            "errcode": failure.failure_errcode_str,
            "failure_reason": failure.get_failure_reason(),
            "failure_type": str(failure.failure_type),
            "module": failure.module,
            "attempt": attempt,
        }
        try:
            append_line_to_file(self.fpath, json.dumps(_entry))
        except Exception as e:
            logger.error(f"failed to record failure to journal {self.fpath}: {e!r}")


class ErrorRecoverySupervisor:
    """Run stages, commit their result, and drive the recovery on failure.

    The <abort_flag> is shared with the stages(see StageBase), it is cleared
        before each stage attempt.
    """

    def __init__(
        self,
        store: DeviceStateStore,
        operator: RecoveryPrompt,
        *,
        journal: Optional[FailureJournal] = None,
        shell: Callable[[], None] = spawn_diagnostic_shell,
    ) -> None:
        self.store = store
        self.operator = operator
        self.journal = journal or FailureJournal()
        self.shell = shell
        self.abort_flag = threading.Event()

    def request_abort(self) -> None:
        logger.warning("abort requested by operator")
        self.abort_flag.set()

    def _run_once(self, stage: StageProtocol, state: DeviceState) -> DeviceState:
        """Run <stage> and commit its result.

        Raises:
            ProvisionError, any unexpected exception is wrapped as UnspecificProvisionError.
        """
        try:
            new_state = stage.run(state)
            return self.store.commit(new_state)
        except errors.ProvisionError:
            raise
        except Exception as e:
            _err_msg = f"unexpected failure during {stage.name}: {e!r}"
            logger.error(_err_msg)
            raise errors.UnspecificProvisionError(_err_msg, module=__name__) from e

    def _prompt_recovery(self, stage_name: str, failure_reason: str) -> RecoveryAction:
        while True:
            action = RecoveryAction(
                self.operator.choose_recovery(stage_name, failure_reason, RECOVERY_ACTIONS)
            )
            logger.info(f"{stage_name}: operator chose {action}")
            if action != RecoveryAction.SHELL:
                return action
            self.shell()

    def run_stage(self, stage: StageProtocol) -> StageResult:
        """Run <stage> until it succeeds or the operator leaves with Skip/Reboot."""
        state = self.store.load()
        attempt = 0
        while True:
            attempt += 1
            self.abort_flag.clear()
            logger.info(f"run stage {stage.name} ({attempt=})")
            try:
                self._run_once(stage, state)
            except errors.StageAborted as e:
                logger.warning(f"{stage.name} aborted: {e!r}")
                self.journal.record(
                    stage=stage.name,
                    outcome=StageOutcome.ABORTED,
                    failure=e,
                    attempt=attempt,
                )
                return StageResult(
                    stage=stage.name,
                    outcome=StageOutcome.ABORTED,
                    failure_reason=e.get_failure_reason(),
                    action=RecoveryAction.REBOOT,
                    attempts=attempt,
                )
            except errors.ProvisionError as e:
                failure_reason = e.get_failure_reason()
                logger.error(e.get_error_report(title=f"stage {stage.name} failed"))
                self.journal.record(
                    stage=stage.name,
                    outcome=StageOutcome.FAILED,
                    failure=e,
                    attempt=attempt,
                )
                action = self._prompt_recovery(stage.name, failure_reason)
                if action == RecoveryAction.RETRY:
                    continue
                return StageResult(
                    stage=stage.name,
                    outcome=StageOutcome.FAILED,
                    failure_reason=failure_reason,
                    action=action,
                    attempts=attempt,
                )

            logger.info(f"stage {stage.name} finished successfully")
            return StageResult(
                stage=stage.name, outcome=StageOutcome.SUCCESS, attempts=attempt
            )
