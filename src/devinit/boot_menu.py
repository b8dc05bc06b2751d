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
"""Boot menu controller, the top level state machine of the provisioning flow.

One boot cycle goes as follow:

    AwaitingFirmwareBoot -> MenuDisplayed -> Dispatching
        -> StageRunning -> PostStageReboot -> AwaitingFirmwareBoot
        -> LocalBoot -> AwaitingFirmwareBoot
        -> PostStageReboot(PxeBoot) -> AwaitingFirmwareBoot

A failed stage left with Skip, or the diagnostic shell from AdvancedOptions,
    goes from StageRunning back to MenuDisplayed within the same cycle.
"""


from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from devinit import errors
from devinit._types import (
    BOOT_CHOICE_BY_SLOT,
    SLOT_BY_BOOT_CHOICE,
    ControllerState,
    CycleReport,
    MenuChoice,
    MenuKind,
    RecoveryAction,
    SlotID,
    StageOutcome,
    StageResult,
)
from devinit.assets import AssetFetcher
from devinit.configs import FactoryResetMode
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState, DeviceStateStore
from devinit.grub import get_slot_entry_id
from devinit.operator import Operator
from devinit.stages import (
    ConfigureDeviceStage,
    FactoryResetController,
    InstallOSStage,
    PartitionDiskStage,
    ReconfigureGrubStage,
    StageProtocol,
)
from devinit.supervisor import ErrorRecoverySupervisor, spawn_diagnostic_shell
from devinit_common import cmdhelper

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[ControllerState, Tuple[ControllerState, ...]] = {
    ControllerState.AWAITING_FIRMWARE_BOOT: (ControllerState.MENU_DISPLAYED,),
    ControllerState.MENU_DISPLAYED: (ControllerState.DISPATCHING,),
    ControllerState.DISPATCHING: (
        ControllerState.STAGE_RUNNING,
        ControllerState.LOCAL_BOOT,
        ControllerState.POST_STAGE_REBOOT,
    ),
    ControllerState.STAGE_RUNNING: (
        ControllerState.POST_STAGE_REBOOT,
        ControllerState.MENU_DISPLAYED,
    ),
    ControllerState.POST_STAGE_REBOOT: (ControllerState.AWAITING_FIRMWARE_BOOT,),
    ControllerState.LOCAL_BOOT: (
        ControllerState.AWAITING_FIRMWARE_BOOT,
        # hand-off to the local bootloader failed
        ControllerState.MENU_DISPLAYED,
    ),
}

# the order the choices are presented
_MANAGEMENT_CHOICES = [
    MenuChoice.CONFIGURE_DEVICE,
    MenuChoice.PARTITION_DISK,
    MenuChoice.INSTALL_OS1,
    MenuChoice.INSTALL_OS2,
    MenuChoice.FACTORY_RESET,
    MenuChoice.ADVANCED_OPTIONS,
    MenuChoice.RECONFIGURE_GRUB,
    MenuChoice.PXE_BOOT,
]


class IllegalTransition(Exception):
    def __init__(self, current: ControllerState, target: ControllerState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"illegal transition: {current} -> {target}")


def handoff_to_local_boot(entry_id: str) -> None:  # pragma: no cover
    """Let the local bootloader boot <entry_id> once, then reboot."""
    if not (esp_devs := cmdhelper.get_dev_by_token("LABEL", cfg.ESP_LABEL)):
        _err_msg = f"ESP(LABEL={cfg.ESP_LABEL}) not found, cannot hand off to local boot"
        logger.error(_err_msg)
        raise ValueError(_err_msg)
    cmdhelper.ensure_mointpoint(cfg.ESP_MNT, ignore_error=False)
    cmdhelper.mount(esp_devs[0], cfg.ESP_MNT)
    try:
        cmdhelper.grub_reboot(entry_id, boot_directory=cfg.ESP_MNT)
    finally:
        cmdhelper.ensure_umount(cfg.ESP_MNT, ignore_error=True)
    cmdhelper.reboot()


def reboot_to_firmware() -> None:  # pragma: no cover
    cmdhelper.reboot()


class StageFactory:
    """Build the stage for a menu choice.

    <partition_options> and <install_options> are passed through to
        PartitionDiskStage and InstallOSStage respectively.
    """

    def __init__(
        self,
        operator: Operator,
        *,
        abort_flag: threading.Event,
        disk: Optional[str] = None,
        fetcher: Optional[AssetFetcher] = None,
        partition_options: Optional[Dict[str, Any]] = None,
        install_options: Optional[Dict[str, Any]] = None,
        reconfigure_grub_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.operator = operator
        self.abort_flag = abort_flag
        self.disk = disk
        self.fetcher = fetcher
        self.partition_options = partition_options or {}
        self.install_options = install_options or {}
        self.reconfigure_grub_options = reconfigure_grub_options or {}

    def configure(self) -> ConfigureDeviceStage:
        return ConfigureDeviceStage(
            collect_answers=self.operator.collect_config, abort_flag=self.abort_flag
        )

    def partition(self, state: DeviceState) -> PartitionDiskStage:
        disk = self.disk or self.operator.select_disk(state.disk_device)
        return PartitionDiskStage(
            disk, abort_flag=self.abort_flag, **self.partition_options
        )

    def install(self, slot: SlotID) -> InstallOSStage:
        return InstallOSStage(
            slot,
            fetcher=self.fetcher,
            abort_flag=self.abort_flag,
            **self.install_options,
        )

    def reconfigure_grub(self) -> ReconfigureGrubStage:
        return ReconfigureGrubStage(
            abort_flag=self.abort_flag, **self.reconfigure_grub_options
        )

    def build(self, choice: MenuChoice, state: DeviceState) -> StageProtocol:
        if choice == MenuChoice.CONFIGURE_DEVICE:
            return self.configure()
        if choice == MenuChoice.PARTITION_DISK:
            return self.partition(state)
        if choice == MenuChoice.INSTALL_OS1:
            return self.install(SlotID.OS1)
        if choice == MenuChoice.INSTALL_OS2:
            return self.install(SlotID.OS2)
        if choice == MenuChoice.RECONFIGURE_GRUB:
            return self.reconfigure_grub()
        raise ValueError(f"{choice} is not dispatched to a stage")


class BootMenuController:
    """Drive the boot cycles of the device.

    Args:
        preselected: the choice already made in the local bootloader menu,
            it answers the first menu of this controller.
        local_boot: hand-off callable that boots the given boot entry id.
        reboot: callable that reboots back into the firmware.
    """

    def __init__(
        self,
        *,
        store: DeviceStateStore,
        operator: Operator,
        supervisor: ErrorRecoverySupervisor,
        stage_factory: Optional[StageFactory] = None,
        preselected: Optional[MenuChoice] = None,
        local_boot: Callable[[str], None] = handoff_to_local_boot,
        reboot: Callable[[], None] = reboot_to_firmware,
        shell: Callable[[], None] = spawn_diagnostic_shell,
        network_menu_timeout: int = cfg.NETWORK_MENU_TIMEOUT,
        local_menu_timeout: int = cfg.LOCAL_MENU_TIMEOUT,
        factory_reset_mode: FactoryResetMode = cfg.FACTORY_RESET_MODE,
    ) -> None:
        self.store = store
        self.operator = operator
        self.supervisor = supervisor
        self.stage_factory = stage_factory or StageFactory(
            operator, abort_flag=supervisor.abort_flag
        )
        self._preselected = preselected
        self._local_boot = local_boot
        self._reboot = reboot
        self._shell = shell
        self.network_menu_timeout = network_menu_timeout
        self.local_menu_timeout = local_menu_timeout
        self.factory_reset_mode = factory_reset_mode

        self.state = ControllerState.AWAITING_FIRMWARE_BOOT
        self._report: Optional[CycleReport] = None
        # boot choices whose hand-off failed in the current cycle
        self._failed_handoffs: Set[MenuChoice] = set()

    #
    # ------ menu policy ------ #
    #

    @staticmethod
    def get_menu_kind(state: DeviceState) -> MenuKind:
        return MenuKind.LOCAL if state.installed_slots else MenuKind.NETWORK

    @staticmethod
    def get_offered_choices(state: DeviceState) -> List[MenuChoice]:
        """BootOS choices are only offered for installed slots."""
        res = [BOOT_CHOICE_BY_SLOT[_slot] for _slot in state.installed_slots]
        res.extend(_MANAGEMENT_CHOICES)
        return res

    @staticmethod
    def get_default_choice(state: DeviceState) -> MenuChoice:
        """Get the choice taken on menu timeout.

        PxeBoot when no slot is installed, otherwise boot the default boot target,
            or the first installed slot if the default boot target is not installed.
        """
        if not state.installed_slots:
            return MenuChoice.PXE_BOOT
        if state.default_boot_target in state.installed_slots:
            return BOOT_CHOICE_BY_SLOT[state.default_boot_target]
        return BOOT_CHOICE_BY_SLOT[state.installed_slots[0]]

    def get_menu_timeout(self, menu_kind: MenuKind) -> int:
        if menu_kind == MenuKind.NETWORK:
            return self.network_menu_timeout
        return self.local_menu_timeout

    #
    # ------ state machine ------ #
    #

    def _transit(self, target: ControllerState) -> None:
        if target not in TRANSITIONS[self.state]:
            _err_msg = f"illegal transition: {self.state} -> {target}"
            logger.error(_err_msg)
            raise IllegalTransition(self.state, target)
        logger.debug(f"{self.state} -> {target}")
        self.state = target
        if self._report:
            self._report.states.append(target)

    def _display_menu(self, state: DeviceState, report: CycleReport) -> MenuChoice:
        offered = self.get_offered_choices(state)
        default = self.get_default_choice(state)
        if default in self._failed_handoffs:
            # not to loop on a broken local boot, fall back to network boot
            default = MenuChoice.PXE_BOOT
        timeout = self.get_menu_timeout(report.menu_kind)
        report.offered = offered
        report.timed_out = False

        _preselected, self._preselected = self._preselected, None
        if _preselected is not None:
            if _preselected in offered:
                logger.info(f"take the choice made in bootloader menu: {_preselected}")
                return _preselected
            logger.warning(f"preselected {_preselected} is not offered, ignored")

        choice = None
        if timeout > 0:
            choice = self.operator.wait_for_choice(
                offered, default=default, timeout=timeout
            )
        if choice is None or choice not in offered:
            logger.info(f"menu timeout({timeout}s), take the default: {default}")
            report.timed_out = True
            return default
        return choice

    @staticmethod
    def _unsupervised_failure(name: str, _err_msg: str) -> StageResult:
        """Failure that happens outside of any supervised stage run."""
        return StageResult(
            stage=name,
            outcome=StageOutcome.FAILED,
            failure_reason=errors.UnspecificProvisionError(
                _err_msg, module=__name__
            ).get_failure_reason(),
            action=RecoveryAction.SKIP,
        )

    def _prepare_stage_run(
        self, choice: MenuChoice, state: DeviceState
    ) -> Callable[[], List[StageResult]]:
        """Build every stage needed by <choice>, return the callable that runs them."""
        if choice == MenuChoice.FACTORY_RESET:
            factory_reset = FactoryResetController(
                supervisor=self.supervisor,
                partition_stage_factory=lambda: self.stage_factory.partition(state),
                install_stage_factory=self.stage_factory.install,
                mode=self.factory_reset_mode,
            )
            stages = factory_reset.get_stages()
            return lambda: factory_reset.run(stages)

        stage = self.stage_factory.build(choice, state)
        return lambda: [self.supervisor.run_stage(stage)]

    def _run_stage(self, choice: MenuChoice, state: DeviceState) -> List[StageResult]:
        try:
            _run = self._prepare_stage_run(choice, state)
        except Exception as e:
            # the operator must still be able to leave this cycle
            _err_msg = f"failed to prepare stage for {choice}: {e!r}"
            logger.error(_err_msg)
            return [self._unsupervised_failure(str(choice), _err_msg)]
        return _run()

    def _dispatch(self, choice: MenuChoice, state: DeviceState, report: CycleReport) -> None:
        if _slot := SLOT_BY_BOOT_CHOICE.get(choice):
            self._transit(ControllerState.LOCAL_BOOT)
            logger.info(f"hand off to local bootloader: {_slot}")
            try:
                self._local_boot(get_slot_entry_id(_slot))
            except Exception as e:
                _err_msg = f"failed to hand off to local boot {_slot}: {e!r}"
                logger.error(_err_msg)
                report.stage_results.append(
                    self._unsupervised_failure(f"local-boot-{_slot.lower()}", _err_msg)
                )
                self._failed_handoffs.add(choice)
                self._transit(ControllerState.MENU_DISPLAYED)
            return

        if choice == MenuChoice.PXE_BOOT:
            self._transit(ControllerState.POST_STAGE_REBOOT)
            return

        self._transit(ControllerState.STAGE_RUNNING)
        if choice == MenuChoice.ADVANCED_OPTIONS:
            self._shell()
            self._transit(ControllerState.MENU_DISPLAYED)
            return

        results = self._run_stage(choice, state)
        report.stage_results.extend(results)
        _last = results[-1]
        if _last.outcome != StageOutcome.SUCCESS and _last.action == RecoveryAction.SKIP:
            self._transit(ControllerState.MENU_DISPLAYED)
        else:
            self._transit(ControllerState.POST_STAGE_REBOOT)

    def run_cycle(self) -> CycleReport:
        """Run one boot cycle, from firmware boot until the next reboot."""
        state = self.store.load()
        report = CycleReport(
            menu_kind=self.get_menu_kind(state), states=[self.state]
        )
        self._report = report
        self._failed_handoffs = set()
        try:
            self._transit(ControllerState.MENU_DISPLAYED)
            while self.state == ControllerState.MENU_DISPLAYED:
                report.choice = self._display_menu(state, report)
                logger.info(f"{report.menu_kind} menu: dispatch {report.choice}")
                self._transit(ControllerState.DISPATCHING)
                self._dispatch(report.choice, state, report)
                # stage might have changed the persisted state
                state = self.store.load()

            if self.state == ControllerState.POST_STAGE_REBOOT:
                self._reboot()
            self._transit(ControllerState.AWAITING_FIRMWARE_BOOT)
        finally:
            self._report = None
        return report

    def run_forever(self, max_cycles: Optional[int] = None) -> List[CycleReport]:
        """Loop boot cycles, on real hardware the reboot never returns."""
        reports: List[CycleReport] = []
        while max_cycles is None or len(reports) < max_cycles:
            reports.append(self.run_cycle())
        return reports
