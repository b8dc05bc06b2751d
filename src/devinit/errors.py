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
"""devinit error code definition"""


from __future__ import annotations

import traceback
from enum import Enum, unique
from typing import ClassVar, Optional

from devinit._types import FailureType


@unique
class ProvisionErrorCode(int, Enum):
    E_UNSPECIFIC = 0

    #
    # ------ operator input errors ------
    #
    E_INVALID_INPUT = 100
    E_INVALID_HOSTNAME = 101
    E_INVALID_NETWORK_CONFIG = 102

    #
    # ------ device layout errors ------
    #
    E_DEVICE_LAYOUT = 200
    E_INSUFFICIENT_DISK_SPACE = 201
    E_NO_SUCH_PARTITION = 202

    #
    # ------ external tool and asset errors ------
    #
    E_TOOL_INVOCATION_FAILED = 300
    E_ASSET_DOWNLOAD_FAILED = 301
    E_DEVICE_STATE_COMMIT_FAILED = 302

    #
    # ------ operator cancellation ------
    #
    E_STAGE_ABORTED = 400

    def to_errcode_str(self) -> str:
        return f"{self.value:0>3}"


class ProvisionError(Exception):
    """Errors that happen during a provisioning stage executing.

    This exception class should be the base module level exception for each module.
    It should always be captured by the ErrorRecoverySupervisor.
    """

    ERROR_PREFIX: ClassVar[str] = "E"

    failure_type: FailureType = FailureType.RECOVERABLE
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_UNSPECIFIC
    failure_description: str = "no description available for this error"

    def __init__(self, *args: object, module: str) -> None:
        self.module = module
        super().__init__(*args)

    @property
    def failure_errcode_str(self) -> str:
        return f"{self.ERROR_PREFIX}{self.failure_errcode.to_errcode_str()}"

    def get_failure_traceback(self, *, splitter="\n") -> str:
        return splitter.join(
            traceback.format_exception(type(self), self, self.__traceback__)
        )

    def get_failure_reason(self) -> str:
        """Return failure_reason str."""
        return f"{self.failure_errcode_str}: {self.failure_description}"

    def get_error_report(self, title: str = "") -> str:
        """The detailed failure report for debug use."""
        return (
            f"\n{title}\n"
            f"@module: {self.module}"
            "\n------ failure_reason ------\n"
            f"{self.get_failure_reason()}"
            "\n------ end of failure_reason ------\n"
            "\n------ exception informaton ------\n"
            f"{self!r}"
            "\n------ end of exception informaton ------\n"
            "\n------ exception traceback ------\n"
            f"{self.get_failure_traceback()}"
            "\n------ end of exception traceback ------\n"
        )


class UnspecificProvisionError(ProvisionError):
    """Wraps an unexpected exception raised from inside a stage."""

    failure_type: FailureType = FailureType.UNRECOVERABLE
    failure_description: str = "unexpected error during stage execution"


#
# ------ operator input errors ------
#


class InvalidHostname(ProvisionError):
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_INVALID_HOSTNAME
    failure_description: str = (
        "hostname must be 1-63 alphanumeric or hyphen chars, "
        "not starting or ending with hyphen"
    )


class InvalidNetworkConfig(ProvisionError):
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_INVALID_NETWORK_CONFIG
    failure_description: str = "invalid static network configuration"


#
# ------ device layout errors ------
#


class InsufficientDiskSpace(ProvisionError):
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_INSUFFICIENT_DISK_SPACE
    failure_description: str = "disk is too small to hold the partition layout"


class NoSuchPartition(ProvisionError):
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_NO_SUCH_PARTITION
    failure_description: str = (
        "target slot partition not found in partition table, partition the disk first"
    )


#
# ------ external tool and asset errors ------
#


class ToolInvocationFailed(ProvisionError):
    """An external tool exited with non-zero code.

    <underlying_code> is the tool's exit code, or None if the tool
        didn't run to completion(not found, timeout, IO error, etc.).
    """

    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_TOOL_INVOCATION_FAILED
    failure_description: str = "external tool invocation failed"

    def __init__(
        self, *args: object, module: str, stage: str, underlying_code: Optional[int]
    ) -> None:
        self.stage = stage
        self.underlying_code = underlying_code
        super().__init__(*args, module=module)

    def get_failure_reason(self) -> str:
        return (
            f"{self.failure_errcode_str}: {self.failure_description} "
            f"(stage={self.stage}, code={self.underlying_code})"
        )


class AssetDownloadFailed(ToolInvocationFailed):
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_ASSET_DOWNLOAD_FAILED
    failure_description: str = "failed to fetch network-boot asset"


class DeviceStateCommitFailed(ProvisionError):
    failure_type: FailureType = FailureType.UNRECOVERABLE
    failure_errcode: ProvisionErrorCode = (
        ProvisionErrorCode.E_DEVICE_STATE_COMMIT_FAILED
    )
    failure_description: str = "failed to persist device state"


#
# ------ operator cancellation ------
#


class StageAborted(ProvisionError):
    failure_errcode: ProvisionErrorCode = ProvisionErrorCode.E_STAGE_ABORTED
    failure_description: str = "stage aborted by operator"
