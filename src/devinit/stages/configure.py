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
"""Device configuration stage.

Validates the operator provided device configuration and saves it into DeviceState.
    No change is made outside DeviceState, the saved config is applied into the
    OS slots at installation.
"""


from __future__ import annotations

import ipaddress
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

import yaml
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import load_ssh_public_key

from devinit import errors
from devinit._types import NetworkMode
from devinit.configs.cfg import cfg
from devinit.device_state import DeviceState, SavedConfig
from devinit.stages._base import StageBase
from devinit_common import replace_root
from devinit_common._io import write_str_to_file_atomic
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

HOSTNAME_PA = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")


@dataclass
class ConfigAnswers:
    """Raw answers collected from the operator."""

    hostname: str
    network_mode: Union[NetworkMode, str] = NetworkMode.DHCP
    static_address: Optional[str] = None
    gateway: Optional[str] = None
    dns_servers: List[str] = field(default_factory=lambda: list(cfg.DEFAULT_DNS_SERVERS))
    timezone: str = cfg.DEFAULT_TIMEZONE
    ssh_public_keys: List[str] = field(default_factory=list)
    ssh_enabled: bool = True


#
# ------ validators ------ #
#


def validate_hostname(hostname: str) -> str:
    hostname = hostname.strip()
    if not HOSTNAME_PA.match(hostname):
        _err_msg = f"invalid hostname: {hostname!r}"
        logger.error(_err_msg)
        raise errors.InvalidHostname(_err_msg, module=__name__)
    return hostname


def _invalid_network_config(_err_msg: str) -> errors.InvalidNetworkConfig:
    logger.error(_err_msg)
    return errors.InvalidNetworkConfig(_err_msg, module=__name__)


def validate_static_address(static_address: Optional[str]) -> str:
    """<static_address> must be an IPv4 address with prefix length, like 192.168.1.10/24."""
    if not static_address or "/" not in static_address:
        raise _invalid_network_config(
            f"static address must be in IPv4 CIDR form: {static_address!r}"
        )
    try:
        return str(ipaddress.IPv4Interface(static_address.strip()))
    except ValueError as e:
        raise _invalid_network_config(
            f"invalid static address {static_address!r}: {e!r}"
        ) from e


def validate_ipv4_address(addr: str, *, field_name: str) -> str:
    try:
        return str(ipaddress.IPv4Address(addr.strip()))
    except ValueError as e:
        raise _invalid_network_config(f"invalid {field_name} {addr!r}: {e!r}") from e


def filter_ssh_public_keys(keys: List[str]) -> List[str]:
    """Keep the parsable public keys, in order and without duplication.

    Unparsable keys are dropped one by one with a warning, they don't fail the stage.
    """
    res: List[str] = []
    for _key in keys:
        _key = _key.strip()
        if not _key:
            continue
        try:
            load_ssh_public_key(_key.encode())
        except (ValueError, UnsupportedAlgorithm) as e:
            logger.warning(f"reject unparsable ssh public key {_key[:32]!r}...: {e!r}")
            continue
        if _key not in res:
            res.append(_key)
    return res


def build_saved_config(answers: ConfigAnswers) -> SavedConfig:
    """Validate <answers> and build the SavedConfig from it.

    Raises:
        InvalidHostname, InvalidNetworkConfig.
    """
    hostname = validate_hostname(answers.hostname)
    try:
        network_mode = NetworkMode(answers.network_mode)
    except ValueError as e:
        raise _invalid_network_config(
            f"unknown network mode: {answers.network_mode!r}"
        ) from e

    static_address, gateway = None, None
    if network_mode == NetworkMode.STATIC:
        static_address = validate_static_address(answers.static_address)
        if answers.gateway:
            gateway = validate_ipv4_address(answers.gateway, field_name="gateway")
    else:
        if answers.static_address:
            logger.info(f"drop {answers.static_address=} in dhcp mode")

    dns_servers = [
        validate_ipv4_address(_dns, field_name="dns server")
        for _dns in answers.dns_servers
        if _dns.strip()
    ]

    return SavedConfig(
        hostname=hostname,
        network_mode=network_mode,
        static_address=static_address,
        gateway=gateway,
        dns_servers=dns_servers,
        timezone=answers.timezone.strip() or cfg.DEFAULT_TIMEZONE,
        ssh_public_keys=filter_ssh_public_keys(answers.ssh_public_keys),
        ssh_enabled=answers.ssh_enabled,
    )


#
# ------ apply saved config into an OS slot ------ #
#


def render_netplan(config: SavedConfig) -> str:
    """Render the netplan config for <config>."""
    ethernet: dict = {"match": {"name": "e*"}}
    if config.network_mode == NetworkMode.STATIC:
        ethernet["dhcp4"] = False
        ethernet["dhcp6"] = False
        ethernet["addresses"] = [config.static_address]
        if config.gateway:
            ethernet["routes"] = [{"to": "default", "via": config.gateway}]
    else:
        ethernet["dhcp4"] = True
        ethernet["dhcp6"] = True
    if config.dns_servers:
        ethernet["nameservers"] = {"addresses": list(config.dns_servers)}

    return yaml.safe_dump(
        {
            "network": {
                "version": 2,
                "renderer": "networkd",
                "ethernets": {"primary": ethernet},
            }
        },
        sort_keys=False,
    )


def apply_saved_config(config: SavedConfig, target_root: StrOrPath) -> None:
    """Write <config> into the rootfs mounted at <target_root>.

    This includes hostname, hosts, timezone, netplan config and root's authorized_keys.
    """

    def _path(_canonical: str) -> Path:
        return Path(replace_root(_canonical, cfg.CANONICAL_ROOT, target_root))

    _hostname = _path(cfg.HOSTNAME_FPATH)
    _hostname.parent.mkdir(exist_ok=True, parents=True)
    write_str_to_file_atomic(_hostname, f"{config.hostname}\n")
    write_str_to_file_atomic(
        _path(cfg.HOSTS_FPATH),
        f"127.0.0.1\tlocalhost\n127.0.1.1\t{config.hostname}\n",
    )

    write_str_to_file_atomic(_path(cfg.TIMEZONE_FPATH), f"{config.timezone}\n")
    _localtime = _path(cfg.LOCALTIME_FPATH)
    _localtime.unlink(missing_ok=True)
    _localtime.symlink_to(f"{cfg.ZONEINFO_DPATH}/{config.timezone}")

    _netplan = _path(cfg.NETPLAN_FPATH)
    _netplan.parent.mkdir(exist_ok=True, parents=True)
    write_str_to_file_atomic(_netplan, render_netplan(config))
    os.chmod(_netplan, 0o600)

    if config.ssh_public_keys:
        _authorized_keys = _path(cfg.ROOT_AUTHORIZED_KEYS_FPATH)
        _authorized_keys.parent.mkdir(mode=0o700, exist_ok=True, parents=True)
        write_str_to_file_atomic(
            _authorized_keys, "\n".join(config.ssh_public_keys) + "\n"
        )
        os.chmod(_authorized_keys, 0o600)
    logger.info(f"saved config applied to {target_root}")


class ConfigureDeviceStage(StageBase):
    """Save the validated device configuration into DeviceState.

    The answers are either fixed at construction, or collected from <collect_answers>
        on each run, so that a retry asks the operator again.
    """

    name = "configure"

    def __init__(
        self,
        *,
        answers: Optional[ConfigAnswers] = None,
        collect_answers: Optional[Callable[[], ConfigAnswers]] = None,
        abort_flag: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(abort_flag=abort_flag)
        if answers is None and collect_answers is None:
            raise ValueError("either answers or collect_answers should be provided")
        self._answers = answers
        self._collect_answers = collect_answers

    def run(self, state: DeviceState) -> DeviceState:
        answers = self._answers
        if answers is None and self._collect_answers:
            answers = self._collect_answers()
        assert answers

        self.check_abort("validating device configuration")
        saved_config = build_saved_config(answers)

        new_state = state.copy_for_update()
        new_state.saved_config = saved_config
        logger.info(
            f"device configuration saved: hostname={saved_config.hostname}, "
            f"network={saved_config.network_mode}, timezone={saved_config.timezone}, "
            f"ssh_keys={len(saved_config.ssh_public_keys)}"
        )
        return new_state
