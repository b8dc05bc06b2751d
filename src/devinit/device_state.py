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
"""Persisted device state definition and storage.

The device state records the current partitioning, which OS slots are installed,
    the saved device configuration and the bootloader entries.

It is stored as JSON with camelCase field names. The primary location is on the
    Data partition, so that it survives OS slots reinstallation. Before the Data
    partition exists(first network boot), a bootstrap copy under the tmpfs of the
    network-booted environment is used instead.
"""


from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic import model_validator
from pydantic.alias_generators import to_camel

from devinit._types import Filesystem, NetworkMode, PartitionRole, SlotID
from devinit.configs.cfg import cfg
from devinit.errors import DeviceStateCommitFailed
from devinit_common._io import write_str_to_file_atomic
from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

SLOT_ROLES = frozenset([PartitionRole.OS1, PartitionRole.OS2])


class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PartitionDescriptor(_StateModel):
    role: PartitionRole
    size_bytes: int = Field(gt=0)
    filesystem: Filesystem
    device_node: str
    start_bytes: int = 0
    label: str = ""

    @property
    def end_bytes(self) -> int:
        return self.start_bytes + self.size_bytes


class SavedConfig(_StateModel):
    hostname: str
    network_mode: NetworkMode = NetworkMode.DHCP
    static_address: Optional[str] = None
    gateway: Optional[str] = None
    dns_servers: List[str] = Field(
        default_factory=lambda: list(cfg.DEFAULT_DNS_SERVERS)
    )
    timezone: str = cfg.DEFAULT_TIMEZONE
    ssh_public_keys: List[str] = Field(default_factory=list)
    ssh_enabled: bool = True

    @field_validator("ssh_public_keys")
    @classmethod
    def _dedup_keys(cls, value: List[str]) -> List[str]:
        # set semantics, first appearance order is kept
        return list(dict.fromkeys(value))

    @classmethod
    def default_config(cls, *, ssh_public_keys: List[str] | None = None) -> SavedConfig:
        return cls(
            hostname=cfg.DEFAULT_HOSTNAME,
            network_mode=NetworkMode.DHCP,
            timezone=cfg.DEFAULT_TIMEZONE,
            ssh_public_keys=ssh_public_keys or [],
        )


class BootEntry(_StateModel):
    id: str
    label: str
    kernel_path: str
    target_partition: Optional[str] = None
    is_default: bool = False
    timeout_seconds: int = Field(default=0, ge=0)


class DeviceState(_StateModel):
    """The single persisted record describing device provisioning progress."""

    partition_table: List[PartitionDescriptor] = Field(default_factory=list)
    disk_device: Optional[str] = None
    disk_size_bytes: int = 0
    installed_slots: List[SlotID] = Field(default_factory=list)
    default_boot_target: SlotID = SlotID.OS1
    saved_config: Optional[SavedConfig] = None
    bootloader_entries: List[BootEntry] = Field(default_factory=list)

    @field_validator("installed_slots")
    @classmethod
    def _normalize_slots(cls, value: List[SlotID]) -> List[SlotID]:
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_invariants(self) -> DeviceState:
        _roles = [_p.role for _p in self.partition_table]
        if len(_roles) != len(set(_roles)):
            raise ValueError(f"duplicated partition roles: {_roles}")

        if self.partition_table:
            _total = sum(_p.size_bytes for _p in self.partition_table)
            if _total > self.disk_size_bytes:
                raise ValueError(
                    f"partitions total size {_total} exceeds disk size {self.disk_size_bytes}"
                )

        for _p in self.partition_table:
            if _p.role == PartitionRole.ESP and _p.filesystem != Filesystem.FAT32:
                raise ValueError(f"ESP must be FAT32: {_p}")
            if _p.role in SLOT_ROLES and _p.filesystem != Filesystem.EXT4:
                raise ValueError(f"OS slot must be ext4: {_p}")

        for _slot in self.installed_slots:
            if _slot.role not in _roles:
                raise ValueError(f"installed {_slot=} has no partition")

        _ids = [_e.id for _e in self.bootloader_entries]
        if len(_ids) != len(set(_ids)):
            raise ValueError(f"duplicated boot entries: {_ids}")
        if sum(1 for _e in self.bootloader_entries if _e.is_default) > 1:
            raise ValueError("more than one default boot entry")
        return self

    #
    # ------ query helpers ------ #
    #

    def get_partition(self, role: PartitionRole) -> Optional[PartitionDescriptor]:
        for _p in self.partition_table:
            if _p.role == role:
                return _p

    def copy_for_update(self) -> DeviceState:
        """Get a deep copy of this state for a stage to work on."""
        return self.model_copy(deep=True)

    def dumps(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def loads(cls, _raw: str | bytes) -> DeviceState:
        return cls.model_validate_json(_raw)


class DeviceStateStore:
    """Load and commit the persisted DeviceState.

    All read-modify-write of the persisted state must go through this store,
        the internal lock makes it safe for a concurrent reader.
    """

    def __init__(
        self,
        *,
        primary_fpath: StrOrPath = cfg.DEVICE_STATE_FPATH,
        bootstrap_fpath: StrOrPath = cfg.BOOTSTRAP_DEVICE_STATE_FPATH,
    ) -> None:
        self.primary_fpath = Path(primary_fpath)
        self.bootstrap_fpath = Path(bootstrap_fpath)
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _load_from(self, fpath: Path) -> Optional[DeviceState]:
        try:
            return DeviceState.loads(fpath.read_text())
        except FileNotFoundError:
            return
        except (OSError, ValidationError) as e:
            logger.error(f"failed to load device state from {fpath}: {e!r}")

    def load(self) -> DeviceState:
        """Load the persisted state, the primary location is preferred.

        If no valid state file is found, an empty DeviceState is returned.
        """
        with self._lock:
            for _fpath in (self.primary_fpath, self.bootstrap_fpath):
                if (_state := self._load_from(_fpath)) is not None:
                    logger.debug(f"device state loaded from {_fpath}")
                    return _state
            logger.info("no device state found, start with empty state")
            return DeviceState()

    @property
    def commit_fpath(self) -> Path:
        # primary location is only available after the Data partition is mounted
        if self.primary_fpath.parent.is_dir():
            return self.primary_fpath
        return self.bootstrap_fpath

    def commit(self, new_state: DeviceState) -> DeviceState:
        """Validate and persist <new_state> atomically.

        Raises:
            DeviceStateCommitFailed if <new_state> violates the invariants or
                cannot be written.
        """
        with self._lock:
            try:
                # re-validate, the state might be modified after construction
                _validated = DeviceState.loads(new_state.dumps())
            except ValidationError as e:
                _err_msg = f"refuse to commit invalid device state: {e!r}"
                logger.error(_err_msg)
                raise DeviceStateCommitFailed(_err_msg, module=__name__) from e

            _fpath = self.commit_fpath
            try:
                _fpath.parent.mkdir(exist_ok=True, parents=True)
                write_str_to_file_atomic(_fpath, _validated.dumps())
            except OSError as e:
                _err_msg = f"failed to write device state to {_fpath}: {e!r}"
                logger.error(_err_msg)
                raise DeviceStateCommitFailed(_err_msg, module=__name__) from e

            logger.info(f"device state committed to {_fpath}")
            return _validated

    def update(self, _func: Callable[[DeviceState], DeviceState]) -> DeviceState:
        """Load, apply <_func> and commit, under the store lock."""
        with self._lock:
            return self.commit(_func(self.load().copy_for_update()))
