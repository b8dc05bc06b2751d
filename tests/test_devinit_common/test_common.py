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

import subprocess

import pytest

from devinit_common import bytes_to, replace_root, to_bytes
from devinit_common.common import (
    get_backoff,
    subprocess_call,
    subprocess_check_output,
)


@pytest.mark.parametrize(
    "size, units, expected",
    (
        (512, "MiB", 512 * 1024**2),
        (3.7, "GiB", int(3.7 * 1024**3)),
        (1, "KB", 1000),
        (123, "Bytes", 123),
    ),
)
def test_to_bytes(size, units, expected):
    assert to_bytes(size, units) == expected


def test_bytes_to():
    assert bytes_to(20 * 1024**3, "GiB") == 20


@pytest.mark.parametrize(
    "path, old_root, new_root, expected",
    (
        ("/etc/fstab", "/", "/mnt/os1", "/mnt/os1/etc/fstab"),
        ("/boot/efi/", "/", "/run/devinit/mnt/target_slot", "/run/devinit/mnt/target_slot/boot/efi"),
        ("/a/b/c", "/a", "/x", "/x/b/c"),
    ),
)
def test_replace_root(path, old_root, new_root, expected):
    assert replace_root(path, old_root, new_root) == expected


@pytest.mark.parametrize(
    "path, old_root, new_root",
    (
        ("/etc/fstab", "/var", "/mnt"),
        ("/etc/fstab", "relative", "/mnt"),
    ),
)
def test_replace_root_invalid(path, old_root, new_root):
    with pytest.raises(ValueError):
        replace_root(path, old_root, new_root)


@pytest.mark.parametrize(
    "n, factor, _max, expected",
    (
        (1, 0.1, 3, 0.1),
        (3, 0.1, 3, 0.4),
        (10, 0.1, 3, 3),
    ),
)
def test_get_backoff(n, factor, _max, expected):
    assert get_backoff(n, factor, _max) == pytest.approx(expected)


class TestSubprocessCall:
    def test_subprocess_call_failed(self):
        cmd = ["ls", "/non-existed-folder-42"]
        with pytest.raises(subprocess.CalledProcessError) as e:
            subprocess_call(cmd, raise_exception=True)
        assert e.value.returncode != 0

    def test_subprocess_call_failed_suppressed(self):
        subprocess_call(["ls", "/non-existed-folder-42"], raise_exception=False)

    def test_subprocess_check_output(self):
        assert subprocess_check_output(["echo", "abc"], raise_exception=True) == "abc"

    def test_subprocess_check_output_default_on_failure(self):
        assert (
            subprocess_check_output(
                ["ls", "/non-existed-folder-42"], raise_exception=False, default="x"
            )
            == "x"
        )

    def test_subprocess_call_with_input(self, tmp_path):
        _dst = tmp_path / "out"
        subprocess_call(
            ["sh", "-c", f"cat > {_dst}"], raise_exception=True, input=b"hello"
        )
        assert _dst.read_text() == "hello"
