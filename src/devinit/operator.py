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
"""Operator interaction surface.

The boot menu controller and the supervisor only talk to the operator through the
    Operator protocol, implemented by:
1. ConsoleOperator, interactive console on the device,
2. QueueOperator, pre-loaded or remotely fed answers(unattended provisioning).
"""


from __future__ import annotations

import logging
import queue
import select
import sys
import time
from typing import IO, Iterable, List, Optional

from typing_extensions import Protocol

from devinit._types import MenuChoice, NetworkMode, RecoveryAction
from devinit.configs.cfg import cfg
from devinit.stages.configure import ConfigAnswers

logger = logging.getLogger(__name__)


class Operator(Protocol):
    def wait_for_choice(
        self,
        choices: List[MenuChoice],
        *,
        default: MenuChoice,
        timeout: float,
    ) -> Optional[MenuChoice]:
        """Wait at most <timeout> seconds for a choice in <choices>.

        Returns:
            The chosen MenuChoice, or None on timeout.
        """

    def choose_recovery(
        self, stage: str, failure_reason: str, actions: List[RecoveryAction]
    ) -> RecoveryAction:
        """Block until the operator picks one of <actions>."""

    def collect_config(self) -> ConfigAnswers: ...

    def select_disk(self, default: Optional[str]) -> str: ...


class ConsoleOperator:
    """Interactive operator on the device console."""

    def __init__(self, *, stdin: IO[str] = sys.stdin, stdout: IO[str] = sys.stdout) -> None:
        self._stdin = stdin
        self._stdout = stdout

    def _print(self, msg: str = "") -> None:
        self._stdout.write(f"{msg}\n")
        self._stdout.flush()

    def _readline(self, timeout: Optional[float] = None) -> Optional[str]:
        """Read one line, or None on timeout or EOF."""
        if timeout is not None:
            _ready, _, _ = select.select([self._stdin], [], [], max(timeout, 0))
            if not _ready:
                return
        if not (_line := self._stdin.readline()):
            return
        return _line.strip()

    def _ask(self, prompt: str, default: str = "") -> str:
        """Ask for one answer, empty answer takes <default>.

        Raises:
            EOFError if the console input is closed.
        """
        _hint = f" [{default}]" if default else ""
        self._stdout.write(f"{prompt}{_hint}: ")
        self._stdout.flush()
        if (_answer := self._readline()) is None:
            raise EOFError(f"console input closed while asking for {prompt}")
        return _answer if _answer else default

    def wait_for_choice(
        self,
        choices: List[MenuChoice],
        *,
        default: MenuChoice,
        timeout: float,
    ) -> Optional[MenuChoice]:
        self._print("")
        for idx, _choice in enumerate(choices, start=1):
            _mark = " (default)" if _choice == default else ""
            self._print(f"  {idx}) {_choice}{_mark}")

        deadline = time.monotonic() + timeout
        while (_remaining := deadline - time.monotonic()) > 0:
            self._stdout.write(f"select [{int(_remaining)}s]: ")
            self._stdout.flush()
            if (_answer := self._readline(_remaining)) is None:
                break
            if _answer.isdigit() and 1 <= int(_answer) <= len(choices):
                return choices[int(_answer) - 1]
            for _choice in choices:
                if _answer.lower() == _choice.lower():
                    return _choice
            self._print(f"invalid choice: {_answer!r}")
        self._print("")

    def choose_recovery(
        self, stage: str, failure_reason: str, actions: List[RecoveryAction]
    ) -> RecoveryAction:
        self._print(f"\n!!! stage {stage} failed: {failure_reason}")
        for idx, _action in enumerate(actions, start=1):
            self._print(f"  {idx}) {_action}")
        while True:
            try:
                _answer = self._ask("recovery action")
            except EOFError as e:
                logger.warning(f"{e!r}, reboot")
                return RecoveryAction.REBOOT
            if _answer.isdigit() and 1 <= int(_answer) <= len(actions):
                return actions[int(_answer) - 1]
            for _action in actions:
                if _answer.lower() == _action.lower():
                    return _action
            self._print(f"invalid action: {_answer!r}")

    def collect_config(self) -> ConfigAnswers:
        hostname = self._ask("hostname", cfg.DEFAULT_HOSTNAME)
        network_mode = self._ask("network mode (dhcp/static)", NetworkMode.DHCP)
        static_address = gateway = None
        if network_mode == NetworkMode.STATIC:
            static_address = self._ask("static address (CIDR, e.g. 192.168.1.10/24)")
            gateway = self._ask("gateway") or None
        dns_servers = self._ask("dns servers", ",".join(cfg.DEFAULT_DNS_SERVERS))
        timezone = self._ask("timezone", cfg.DEFAULT_TIMEZONE)

        self._print("ssh public keys, one per line, empty line to finish:")
        ssh_public_keys: List[str] = []
        while _key := self._readline():
            ssh_public_keys.append(_key)
        ssh_enabled = self._ask("enable ssh service (y/n)", "y").lower().startswith("y")

        return ConfigAnswers(
            hostname=hostname,
            network_mode=network_mode,
            static_address=static_address,
            gateway=gateway,
            dns_servers=[_s.strip() for _s in dns_servers.split(",") if _s.strip()],
            timezone=timezone,
            ssh_public_keys=ssh_public_keys,
            ssh_enabled=ssh_enabled,
        )

    def select_disk(self, default: Optional[str]) -> str:
        while not (_disk := self._ask("target disk (ALL DATA WILL BE LOST)", default or "")):
            self._print("a target disk is required")
        return _disk


class QueueOperator:
    """Operator whose answers are fed through queues.

    Menu choices are waited on with the menu timeout, so that a choice put from
        another thread inside the window wins over the timeout.
    Recovery actions default to Reboot if none is queued.
    """

    def __init__(
        self,
        *,
        choices: Iterable[MenuChoice] = (),
        recoveries: Iterable[RecoveryAction] = (),
        configs: Iterable[ConfigAnswers] = (),
        disk: Optional[str] = None,
    ) -> None:
        self.choices: queue.Queue[MenuChoice] = queue.Queue()
        self.recoveries: queue.Queue[RecoveryAction] = queue.Queue()
        self.configs: queue.Queue[ConfigAnswers] = queue.Queue()
        for _choice in choices:
            self.choices.put_nowait(_choice)
        for _action in recoveries:
            self.recoveries.put_nowait(_action)
        for _config in configs:
            self.configs.put_nowait(_config)
        self.disk = disk

        self.menus_offered: List[List[MenuChoice]] = []
        self.recovery_prompts: List[str] = []

    def wait_for_choice(
        self,
        choices: List[MenuChoice],
        *,
        default: MenuChoice,
        timeout: float,
    ) -> Optional[MenuChoice]:
        self.menus_offered.append(list(choices))
        deadline = time.monotonic() + timeout
        while (_remaining := deadline - time.monotonic()) > 0:
            try:
                _choice = self.choices.get(timeout=_remaining)
            except queue.Empty:
                return
            if _choice in choices:
                return _choice
            logger.warning(f"ignore choice not offered: {_choice}")

    def choose_recovery(
        self, stage: str, failure_reason: str, actions: List[RecoveryAction]
    ) -> RecoveryAction:
        self.recovery_prompts.append(stage)
        try:
            return self.recoveries.get_nowait()
        except queue.Empty:
            logger.warning(f"no recovery action queued for {stage}, reboot")
            return RecoveryAction.REBOOT

    def collect_config(self) -> ConfigAnswers:
        return self.configs.get_nowait()

    def select_disk(self, default: Optional[str]) -> str:
        if _disk := self.disk or default:
            return _disk
        raise ValueError("no target disk available")

