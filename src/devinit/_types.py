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
"""devinit internal used types."""


from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from devinit_common._typing import StrEnum

#
# ------ device layout enums ------ #
#


class PartitionRole(StrEnum):
    ESP = "ESP"
    ROOT = "Root"
    SWAP = "Swap"
    OS1 = "OS1"
    OS2 = "OS2"
    DATA = "Data"


class Filesystem(StrEnum):
    FAT32 = "fat32"
    EXT4 = "ext4"
    SWAP = "swap"


class SlotID(StrEnum):
    OS1 = "OS1"
    OS2 = "OS2"

    @property
    def role(self) -> PartitionRole:
        return PartitionRole(self.value)


class NetworkMode(StrEnum):
    DHCP = "dhcp"
    STATIC = "static"


#
# ------ boot menu enums ------ #
#


class MenuChoice(StrEnum):
    CONFIGURE_DEVICE = "ConfigureDevice"
    PARTITION_DISK = "PartitionDisk"
    INSTALL_OS1 = "InstallOS1"
    INSTALL_OS2 = "InstallOS2"
    BOOT_OS1 = "BootOS1"
    BOOT_OS2 = "BootOS2"
    FACTORY_RESET = "FactoryReset"
    ADVANCED_OPTIONS = "AdvancedOptions"
    RECONFIGURE_GRUB = "ReconfigureGrub"
    PXE_BOOT = "PxeBoot"


BOOT_CHOICE_BY_SLOT = {
    SlotID.OS1: MenuChoice.BOOT_OS1,
    SlotID.OS2: MenuChoice.BOOT_OS2,
}
SLOT_BY_BOOT_CHOICE = {v: k for k, v in BOOT_CHOICE_BY_SLOT.items()}


class MenuKind(StrEnum):
    NETWORK = "network"
    """Menu served by network boot, when no slot is installed."""
    LOCAL = "local"
    """Menu served by the local bootloader."""


class ControllerState(StrEnum):
    AWAITING_FIRMWARE_BOOT = "AwaitingFirmwareBoot"
    MENU_DISPLAYED = "MenuDisplayed"
    DISPATCHING = "Dispatching"
    STAGE_RUNNING = "StageRunning"
    POST_STAGE_REBOOT = "PostStageReboot"
    LOCAL_BOOT = "LocalBoot"


#
# ------ stage result ------ #
#


class RecoveryAction(StrEnum):
    RETRY = "Retry"
    SKIP = "Skip"
    REBOOT = "Reboot"
    SHELL = "Shell"


class StageOutcome(StrEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class FailureType(StrEnum):
    NO_FAILURE = "NO_FAILURE"
    RECOVERABLE = "RECOVERABLE"
    UNRECOVERABLE = "UNRECOVERABLE"


@dataclass
class StageResult:
    """The terminal outcome of one supervised stage run.

    <action> is the recovery action the operator picked to leave a failed
        or aborted stage, it is None on success.
    """

    stage: str
    outcome: StageOutcome
    failure_reason: str = ""
    action: Optional[RecoveryAction] = None
    attempts: int = 1


@dataclass
class CycleReport:
    """What happened in one boot cycle of the boot menu controller."""

    menu_kind: MenuKind
    offered: List[MenuChoice] = field(default_factory=list)
    choice: Optional[MenuChoice] = None
    timed_out: bool = False
    stage_results: List[StageResult] = field(default_factory=list)
    states: List[ControllerState] = field(default_factory=list)
