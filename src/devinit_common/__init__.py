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
"""Common shared libs for devinit."""


from __future__ import annotations

import os
from pathlib import Path

from typing_extensions import Literal

_MultiUnits = Literal["GiB", "MiB", "KiB", "Bytes", "KB", "MB", "GB"]
# fmt: off
_multiplier: dict[_MultiUnits, int] = {
    "GiB": 1024 ** 3, "MiB": 1024 ** 2, "KiB": 1024 ** 1,
    "GB": 1000 ** 3, "MB": 1000 ** 2, "KB": 1000 ** 1,
    "Bytes": 1,
}
# fmt: on


def to_bytes(size: int | float, units: _MultiUnits) -> int:
    """Convert <size> in <units> into bytes, rounded down."""
    return int(size * _multiplier[units])


def bytes_to(size_in_bytes: int, units: _MultiUnits) -> float:
    return size_in_bytes / _multiplier[units]


def replace_root(path: str | Path, old_root: str | Path, new_root: str | Path) -> str:
    """Replace a <path> relative to <old_root> to <new_root>.

    For example, if path="/etc/fstab", old_root="/", new_root="/mnt/os1",
    then we will have "/mnt/os1/etc/fstab".
    """
    # normalize all the input args
    path = os.path.normpath(path)
    old_root = os.path.normpath(old_root)
    new_root = os.path.normpath(new_root)

    if not (old_root.startswith("/") and new_root.startswith("/")):
        raise ValueError(f"{old_root=} and/or {new_root=} is not valid root")
    if os.path.commonpath([path, old_root]) != old_root:
        raise ValueError(f"{old_root=} is not the root of {path=}")
    return os.path.join(new_root, os.path.relpath(path, old_root))
