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

import logging
from pathlib import Path
from typing import Callable, List

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from devinit._types import SlotID
from devinit.device_state import DeviceState, DeviceStateStore
from devinit.grub import regenerate_boot_entries
from devinit.stages.partition import compute_layout

logger = logging.getLogger(__name__)

GiB = 1024**3
TEST_DISK = "/dev/sda"
TEST_DISK_SIZE = 20 * GiB


def gen_ssh_public_key(comment: str = "devinit@test") -> str:
    """Generate a valid OpenSSH format ed25519 public key."""
    _pubkey = Ed25519PrivateKey.generate().public_key()
    _raw = _pubkey.public_bytes(Encoding.OpenSSH, PublicFormat.OpenSSH).decode()
    return f"{_raw} {comment}"


@pytest.fixture
def ssh_key_factory() -> Callable[[str], str]:
    return gen_ssh_public_key


@pytest.fixture
def ssh_public_keys() -> List[str]:
    return [gen_ssh_public_key(f"user{_idx}@test") for _idx in range(2)]


@pytest.fixture
def store(tmp_path: Path) -> DeviceStateStore:
    """A device state store with the primary location available."""
    _primary = tmp_path / "data" / "devinit" / "device_state.json"
    _primary.parent.mkdir(parents=True)
    return DeviceStateStore(
        primary_fpath=_primary,
        bootstrap_fpath=tmp_path / "run" / "device_state.json",
    )


@pytest.fixture
def partitioned_state() -> DeviceState:
    """The state right after partitioning a 20GiB disk."""
    return DeviceState(
        partition_table=compute_layout(TEST_DISK, TEST_DISK_SIZE, swap_size_mib=4096),
        disk_device=TEST_DISK,
        disk_size_bytes=TEST_DISK_SIZE,
    )


@pytest.fixture
def make_installed_state(
    partitioned_state: DeviceState,
) -> Callable[..., DeviceState]:
    def _make(*slots: SlotID, default: SlotID = SlotID.OS1) -> DeviceState:
        _state = partitioned_state.copy_for_update()
        _state.installed_slots = list(slots)
        _state.default_boot_target = default
        _state.bootloader_entries = regenerate_boot_entries(_state)
        return _state

    return _make
