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
"""Utils that shared between modules are listed here."""


from __future__ import annotations

import logging
import shlex
import subprocess
import time
from typing import Optional

from devinit_common._typing import StrOrPath

logger = logging.getLogger(__name__)


def get_backoff(n: int, factor: float, _max: float) -> float:
    return min(_max, factor * (2 ** (n - 1)))


def wait_with_backoff(_retry_cnt: int, *, _backoff_factor: float, _backoff_max: float):
    time.sleep(
        get_backoff(
            _retry_cnt,
            _backoff_factor,
            _backoff_max,
        )
    )


def subprocess_run_wrapper(
    cmd: str | list[str],
    *,
    check: bool,
    check_output: bool,
    chroot: StrOrPath | None = None,
    env: Optional[dict[str, str]] = None,
    input: Optional[bytes] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[bytes]:
    """A wrapper for subprocess.run method.

    Args:
        cmd (str | list[str]): command to be executed.
        check (bool): if True, raise CalledProcessError on non 0 return code.
        check_output (bool): if True, the UTF-8 decoded stdout will be returned.
        chroot (StrOrPath | None): if set, the command will be executed with chroot to <chroot>.
        input (bytes | None): if set, will be fed to the stdin of the command.
        timeout (Optional[float], optional): timeout for execution. Defaults to None.

    Returns:
        subprocess.CompletedProcess[bytes]: the result of the execution.
    """
    if isinstance(cmd, str):
        cmd = shlex.split(cmd)
    if chroot:
        cmd = ["chroot", str(chroot), *cmd]

    logger.debug(f"subprocess call: {cmd}")
    return subprocess.run(
        cmd,
        check=check,
        stderr=subprocess.PIPE,
        stdout=subprocess.PIPE if check_output else None,
        input=input,
        env=env,
        timeout=timeout,
    )


def subprocess_check_output(
    cmd: str | list[str],
    *,
    raise_exception: bool = False,
    default: str = "",
    chroot: StrOrPath | None = None,
    timeout: Optional[float] = None,
) -> str:
    """Run the <cmd> and return UTF-8 decoded stripped stdout.

    Args:
        cmd (str | list[str]): command to be executed.
        raise_exception (bool, optional): raise the underlying CalledProcessError. Defaults to False.
        default (str, optional): if <raise_exception> is False, return <default> on underlying
            subprocess call failed. Defaults to "".
        timeout (Optional[float], optional): timeout for execution. Defaults to None.

    Returns:
        str: UTF-8 decoded stripped stdout.
    """
    try:
        res = subprocess_run_wrapper(
            cmd, check=True, check_output=True, chroot=chroot, timeout=timeout
        )
        return res.stdout.decode().strip()
    except subprocess.CalledProcessError as e:
        _err_msg = (
            f"command({cmd=}) failed(retcode={e.returncode}: \n"
            f"stderr={e.stderr.decode()}"
        )
        logger.debug(_err_msg)

        if raise_exception:
            raise
        return default


def subprocess_call(
    cmd: str | list[str],
    *,
    raise_exception: bool = False,
    chroot: StrOrPath | None = None,
    env: Optional[dict[str, str]] = None,
    input: Optional[bytes] = None,
    timeout: Optional[float] = None,
) -> None:
    """Run the <cmd>.

    Args:
        cmd (str | list[str]): command to be executed.
        raise_exception (bool, optional): raise the underlying CalledProcessError. Defaults to False.
        timeout (Optional[float], optional): timeout for execution. Defaults to None.
    """
    try:
        subprocess_run_wrapper(
            cmd,
            check=True,
            check_output=False,
            chroot=chroot,
            env=env,
            input=input,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        _err_msg = (
            f"command({cmd=}) failed(retcode={e.returncode}: \n"
            f"stderr={e.stderr.decode() if e.stderr else ''}"
        )
        logger.debug(_err_msg)

        if raise_exception:
            raise
