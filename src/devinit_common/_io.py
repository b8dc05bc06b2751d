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
"""Common shared helper functions for IO."""


from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path

from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)

DEFAULT_FILE_CHUNK_SIZE = 1024**2  # 1MiB
TMP_FILE_PREFIX = ".devinit_io_tmp_"


def _gen_tmp_fname() -> str:
    return f"{TMP_FILE_PREFIX}{os.urandom(6).hex()}"


def file_sha256(fpath: StrOrPath, chunk_size: int = DEFAULT_FILE_CHUNK_SIZE) -> str:
    with open(fpath, "rb") as f:
        digestobj = hashlib.sha256()
        while d := f.read(chunk_size):
            digestobj.update(d)
        return digestobj.hexdigest()


def write_str_to_file_atomic(
    fpath: StrOrPath, _input: str, *, follow_symlink: bool = True
) -> None:
    """Overwrite the <fpath> with <_input> atomically.

    This function should be used to write small but critical files,
        like device state file, boot configuration files, etc.

    If <follow_symlink> is True and <fpath> is symlink, this method
        will get the realpath of the <fpath>, and then directly write to the realpath.

    NOTE: rename syscall is atomic when src and dst are on
    the same filesystem under linux.
    """
    if follow_symlink:
        fpath = Path(os.path.realpath(fpath))

    fpath_parent = Path(fpath).parent
    tmp_f = fpath_parent / _gen_tmp_fname()
    try:
        # ensure the new file is written
        with open(tmp_f, "w") as f:
            f.write(_input)
            f.flush()
            os.fsync(f.fileno())
        os.rename(tmp_f, fpath)  # atomically override
    finally:
        tmp_f.unlink(missing_ok=True)


def append_line_to_file(fpath: StrOrPath, line: str) -> None:
    """Append one line to <fpath>, creating the file and its parents if needed.

    The line is flushed and fsynced before return.
    """
    fpath = Path(fpath)
    fpath.parent.mkdir(exist_ok=True, parents=True)
    with open(fpath, "a") as f:
        f.write(f"{line.rstrip()}\n")
        f.flush()
        os.fsync(f.fileno())


def read_str_from_file(path: StrOrPath, _default: str | None = None) -> str:
    """Read contents as string from <path>.

    Args:
        _default: the default value to return when file is not found.

    Returns:
        The content of <path> in text, or <_default> if file is not found and <_default> is set.

    Raises:
        FileNotFoundError if <path> doesn't exist and <default> is None.
    """
    try:
        return Path(path).read_text().strip()
    except FileNotFoundError:
        if _default is not None:
            return _default
        raise
