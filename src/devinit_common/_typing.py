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
"""Common used types, helpers for type hinting."""


from __future__ import annotations

import sys
from enum import Enum
from pathlib import Path
from typing import Union

StrOrPath = Union[str, Path]

# Before 3.11, if type mixin has its own __format__, Enum will implicitly
#   preserve and use the __format__. Starting from 3.11 only subclass of ReprEnum
#   preserves the type mixin's __format__, so <custom_enum>(str, Enum) cannot be
#   used directly as str in f-string anymore, we need StrEnum.
if sys.version_info >= (3, 11):
    from enum import StrEnum

else:

    class StrEnum(str, Enum):

        def __str__(self) -> str:
            return str.__str__(self)
