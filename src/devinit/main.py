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
"""Entrypoint of devinit."""


from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

from devinit import __version__
from devinit._types import MenuChoice, SlotID, StageOutcome, StageResult
from devinit.assets import AssetFetcher
from devinit.boot_menu import BootMenuController, StageFactory
from devinit.configs import FactoryResetMode
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceStateStore
from devinit.grub import get_cmdline_action
from devinit.operator import ConsoleOperator, Operator
from devinit.stages import FactoryResetController
from devinit.supervisor import ErrorRecoverySupervisor, FailureJournal
from devinit_common import cmdhelper
from devinit_common._io import read_str_from_file, write_str_to_file_atomic
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)


def check_other_devinit(pid_fpath: StrOrPath) -> None:  # pragma: no cover
    """Check if there is another devinit instance running, and then
    create a pid lock file for this devinit instance.
    """
    pid_fpath = Path(pid_fpath)
    if pid := read_str_from_file(pid_fpath, _default=""):
        # running process will have a folder under /proc
        if Path(f"/proc/{pid}").is_dir():
            logger.error(f"another instance of devinit({pid=}) is running, abort")
            sys.exit(1)
        logger.warning(f"dangling devinit lock file({pid=}) detected, cleanup")
        pid_fpath.unlink(missing_ok=True)
    write_str_to_file_atomic(pid_fpath, f"{os.getpid()}")


def mount_data_partition() -> None:  # pragma: no cover
    """Mount the Data partition if the disk is already partitioned.

    The persisted device state lives on the Data partition.
    """
    if cmdhelper.is_target_mounted(cfg.DATA_MNT):
        logger.info(f"{cfg.DATA_MNT} is already mounted")
        return
    data_devs = cmdhelper.get_dev_by_token(
        "LABEL", cfg.DATA_LABEL, raise_exception=False
    )
    if not data_devs:
        logger.info("no Data partition found, use bootstrap device state")
        return

    logger.info(f"mount Data partition {data_devs[0]} to {cfg.DATA_MNT}")
    cmdhelper.ensure_mointpoint(cfg.DATA_MNT, ignore_error=False)
    cmdhelper.mount(data_devs[0], cfg.DATA_MNT)
    Path(cfg.DEVICE_STATE_FPATH).parent.mkdir(exist_ok=True, parents=True)


def get_preselected_choice(
    cmdline_fpath: StrOrPath = cfg.PROC_CMDLINE,
) -> Optional[MenuChoice]:
    """Get the choice made in local bootloader menu from kernel cmdline."""
    return get_cmdline_action(read_str_from_file(cmdline_fpath, _default=""))


_ONE_SHOT_CHOICES = {
    "configure": MenuChoice.CONFIGURE_DEVICE,
    "partition": MenuChoice.PARTITION_DISK,
    "reconfigure-grub": MenuChoice.RECONFIGURE_GRUB,
}


def get_one_shot_choice(command: str, slot: Optional[str] = None) -> MenuChoice:
    """Get the menu choice that the one-shot <command> runs the stage of."""
    if command == "install":
        return MenuChoice(f"Install{slot}")
    if (_choice := _ONE_SHOT_CHOICES.get(command)) is None:
        raise ValueError(f"{command} is not a one-shot stage command")
    return _choice


def _exit_code(results: List[StageResult]) -> int:
    return 0 if all(_r.outcome == StageOutcome.SUCCESS for _r in results) else 1


def _parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="devinit",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        description="device provisioning orchestrator for PXE booted devices",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--disk",
        help="the target disk for partitioning, asked interactively if not set",
        default=None,
    )
    subparsers = parser.add_subparsers(dest="command")

    _menu = subparsers.add_parser("menu", help="run the boot menu controller")
    _menu.add_argument(
        "--max-cycles",
        help="stop after this many boot cycles, loop forever if not set",
        type=int,
        default=None,
    )
    _menu.add_argument(
        "--no-preselect",
        help="ignore the choice passed from bootloader via kernel cmdline",
        action="store_true",
        default=False,
    )
    subparsers.add_parser("status", help="print the persisted device state")
    subparsers.add_parser("configure", help="configure the device")
    subparsers.add_parser("partition", help="partition the target disk")
    _install = subparsers.add_parser("install", help="install an OS slot")
    _install.add_argument("slot", choices=[str(_s) for _s in SlotID])
    subparsers.add_parser("reconfigure-grub", help="regenerate the bootloader config")
    _factory_reset = subparsers.add_parser("factory-reset", help="run factory reset")
    _factory_reset.add_argument(
        "--mode",
        choices=[str(_m) for _m in FactoryResetMode],
        default=str(cfg.FACTORY_RESET_MODE),
    )
    return parser.parse_args(args)


def main(args: Optional[List[str]] = None) -> int:  # pragma: no cover
    from devinit.log_setting import configure_logging

    # configure logging before any code being executed
    configure_logging()
    _args = _parse_args(args)
    command = _args.command or "menu"

    logger.info(f"devinit started with {sys.executable=}, {sys.argv=}")
    logger.info(f"devinit version: {__version__}")

    store = DeviceStateStore()
    if command == "status":
        print(store.load().dumps())
        return 0

    Path(cfg.RUN_DIR).mkdir(exist_ok=True, parents=True)
    check_other_devinit(cfg.DEVINIT_PID_FILE)
    mount_data_partition()

    operator: Operator = ConsoleOperator()
    supervisor = ErrorRecoverySupervisor(
        store, operator, journal=FailureJournal(cfg.FAILURE_JOURNAL_FPATH)
    )

    def _signal_handler(signal_value, _) -> None:
        logger.warning(f"devinit receives {signal_value=}, abort the running stage ...")
        supervisor.request_abort()

    signal.signal(signal.SIGINT, _signal_handler)

    stage_factory = StageFactory(
        operator,
        abort_flag=supervisor.abort_flag,
        disk=_args.disk,
        fetcher=AssetFetcher(),
    )

    if command == "menu":
        controller = BootMenuController(
            store=store,
            operator=operator,
            supervisor=supervisor,
            stage_factory=stage_factory,
            preselected=None if _args.no_preselect else get_preselected_choice(),
        )
        controller.run_forever(max_cycles=_args.max_cycles)
        return 0

    if command == "factory-reset":
        state = store.load()
        results = FactoryResetController(
            supervisor=supervisor,
            partition_stage_factory=lambda: stage_factory.partition(state),
            install_stage_factory=stage_factory.install,
            mode=FactoryResetMode(_args.mode),
        ).run()
        return _exit_code(results)

    _choice = get_one_shot_choice(command, getattr(_args, "slot", None))
    stage = stage_factory.build(_choice, store.load())
    return _exit_code([supervisor.run_stage(stage)])


if __name__ == "__main__":
    sys.exit(main())
