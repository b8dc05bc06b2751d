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
"""Common base for provisioning stages.

A stage takes the current DeviceState and returns a new DeviceState on success.
    The input state is never modified in place, the supervisor commits the returned
    state. Any failure is raised as ProvisionError, so nothing is committed.
"""


from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
from typing import Iterator, Optional

from typing_extensions import Protocol

from devinit.device_state import DeviceState
from devinit.errors import ProvisionError, StageAborted, ToolInvocationFailed

logger = logging.getLogger(__name__)


class StageProtocol(Protocol):
    name: str

    def run(self, state: DeviceState) -> DeviceState:
        """Run the stage against <state>, return the new state.

        Raises:
            ProvisionError on failure, StageAborted when aborted by operator.
        """


class StageBase:
    name: str = "stage"

    def __init__(self, *, abort_flag: Optional[threading.Event] = None) -> None:
        self.abort_flag = abort_flag or threading.Event()

    def check_abort(self, next_step: str) -> None:
        """Honor the operator abort request at step boundary."""
        if self.abort_flag.is_set():
            _err_msg = f"{self.name}: aborted by operator before {next_step}"
            logger.warning(_err_msg)
            raise StageAborted(_err_msg, module=self.__module__)

    def _raise_if_aborted_during(self, step: str, e: BaseException) -> None:
        """Raise StageAborted if <e> comes from a tool interrupted by operator abort."""
        if self.abort_flag.is_set():
            _err_msg = f"{self.name}: aborted by operator during {step}: {e!r}"
            logger.warning(_err_msg)
            raise StageAborted(_err_msg, module=self.__module__) from e

    @contextlib.contextmanager
    def tool_step(self, step: str) -> Iterator[None]:
        """Translate failures of external tool invocations into ToolInvocationFailed."""
        try:
            yield
        except ProvisionError:
            raise
        except subprocess.CalledProcessError as e:
            self._raise_if_aborted_during(step, e)
            _err_msg = (
                f"{self.name}: {step} failed: {e!r}, "
                f"stderr={e.stderr.decode() if e.stderr else ''}"
            )
            logger.error(_err_msg)
            raise ToolInvocationFailed(
                _err_msg,
                module=self.__module__,
                stage=self.name,
                underlying_code=e.returncode,
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            self._raise_if_aborted_during(step, e)
            _err_msg = f"{self.name}: {step} failed: {e!r}"
            logger.error(_err_msg)
            raise ToolInvocationFailed(
                _err_msg,
                module=self.__module__,
                stage=self.name,
                underlying_code=None,
            ) from e
