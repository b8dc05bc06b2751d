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


from subprocess import CalledProcessError
from unittest import mock

import pytest

from devinit_common import cmdhelper


class TestMkfs:
    def test_mkfs_ext4_with_fslabel(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_call"
        ) as mock_subprocess:
            cmdhelper.mkfs_ext4("/dev/sda4", fslabel="OS1-ROOT")
            mock_subprocess.assert_called_once_with(
                ["mkfs.ext4", "-F", "-L", "OS1-ROOT", "/dev/sda4"],
                raise_exception=True,
            )

    def test_mkfs_fat32(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_call"
        ) as mock_subprocess:
            cmdhelper.mkfs_fat32("/dev/sda1", fslabel="EFI")
            mock_subprocess.assert_called_once_with(
                ["mkfs.fat", "-F", "32", "-n", "EFI", "/dev/sda1"],
                raise_exception=True,
            )

    def test_mkswap(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_call"
        ) as mock_subprocess:
            cmdhelper.mkswap("/dev/sda3")
            mock_subprocess.assert_called_once_with(
                ["mkswap", "/dev/sda3"], raise_exception=True
            )


class TestPartitioning:
    def test_parted_mkpart(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_call"
        ) as mock_subprocess:
            cmdhelper.parted_mkpart(
                "/dev/sda", name="EFI", fs_type="fat32", start_mib=1, end_mib=513
            )
            mock_subprocess.assert_called_once_with(
                [
                    "parted",
                    "-s",
                    "-a",
                    "optimal",
                    "/dev/sda",
                    "mkpart",
                    "EFI",
                    "fat32",
                    "1MiB",
                    "513MiB",
                ],
                raise_exception=True,
            )

    def test_get_disk_size_in_bytes(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_check_output"
        ) as mock_check_output:
            mock_check_output.return_value = "21474836480"
            assert cmdhelper.get_disk_size_in_bytes("/dev/sda") == 20 * 1024**3

    def test_get_device_tree(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_check_output"
        ) as mock_check_output:
            mock_check_output.return_value = "/dev/sda\n/dev/sda1\n/dev/sda2"
            assert cmdhelper.get_device_tree("/dev/sda") == [
                "/dev/sda",
                "/dev/sda1",
                "/dev/sda2",
            ]


class TestBootloader:
    def test_grub_install_in_chroot(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_call"
        ) as mock_subprocess:
            cmdhelper.grub_install(
                "/mnt/target",
                efi_directory="/boot/efi",
                boot_directory="/boot/efi",
                bootloader_id="ubuntu-os1",
            )
            _args, _kwargs = mock_subprocess.call_args
            assert _args[0] == [
                "grub-install",
                "--target=x86_64-efi",
                "--efi-directory=/boot/efi",
                "--boot-directory=/boot/efi",
                "--bootloader-id=ubuntu-os1",
            ]
            assert _kwargs["chroot"] == "/mnt/target"
            assert _kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_grub_reboot(self):
        with mock.patch(
            "devinit_common.cmdhelper.subprocess_call"
        ) as mock_subprocess:
            cmdhelper.grub_reboot("boot-os1", boot_directory="/run/devinit/mnt/esp")
            mock_subprocess.assert_called_once_with(
                ["grub-reboot", "--boot-directory=/run/devinit/mnt/esp", "boot-os1"],
                raise_exception=True,
            )


class TestEnsureUmount:
    def test_ensure_umount_mounted_target(self):
        with mock.patch(
            "devinit_common.cmdhelper.is_target_mounted"
        ) as mock_is_mounted:
            with mock.patch(
                "devinit_common.cmdhelper.subprocess_call"
            ) as mock_subprocess:
                mock_is_mounted.return_value = True
                cmdhelper.umount("/mnt")
                mock_subprocess.assert_called_once()

    def test_ensure_umount_not_mounted_target(self):
        with mock.patch(
            "devinit_common.cmdhelper.is_target_mounted"
        ) as mock_is_mounted:
            with mock.patch(
                "devinit_common.cmdhelper.subprocess_call"
            ) as mock_subprocess:
                mock_is_mounted.return_value = False
                cmdhelper.ensure_umount("/mnt", ignore_error=False)
                mock_subprocess.assert_not_called()

    def test_ensure_umount_failed(self):
        with mock.patch(
            "devinit_common.cmdhelper.is_target_mounted", return_value=True
        ), mock.patch(
            "devinit_common.cmdhelper.subprocess_call",
            side_effect=CalledProcessError(32, ["umount"]),
        ), mock.patch(
            "devinit_common.cmdhelper.time.sleep"
        ):
            with pytest.raises(CalledProcessError):
                cmdhelper.ensure_umount("/mnt", ignore_error=False, max_retry=2)
            # suppressed
            cmdhelper.ensure_umount("/mnt", ignore_error=True, max_retry=2)


class TestEnsureMountpoint:
    def test_ensure_mountpoint_create_directory(self, tmp_path):
        _mp = tmp_path / "not" / "existed"
        with mock.patch("devinit_common.cmdhelper.ensure_umount") as mock_umount:
            cmdhelper.ensure_mointpoint(_mp, ignore_error=False)
            assert _mp.is_dir()
            mock_umount.assert_not_called()

    def test_ensure_mountpoint_replace_file(self, tmp_path):
        _mp = tmp_path / "mp"
        _mp.write_text("")
        with mock.patch("devinit_common.cmdhelper.ensure_umount"):
            cmdhelper.ensure_mointpoint(_mp, ignore_error=False)
        assert _mp.is_dir()
