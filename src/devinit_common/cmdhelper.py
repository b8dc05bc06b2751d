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
"""Subprocess call collections for devinit use.

When underlying subprocess call failed and <raise_exception> is True,
    functions defined in this module will raise the original CalledProcessError
    to the upper caller.
"""


from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from subprocess import CalledProcessError
from typing import Literal, NoReturn

from devinit_common._typing import StrOrPath
from devinit_common.common import subprocess_call, subprocess_check_output

logger = logging.getLogger(__name__)

# fmt: off
PartitionToken = Literal[
    "UUID", "PARTUUID",
    "LABEL", "PARTLABEL",
    "TYPE",
]
# fmt: on

#
# ------ block device inspection ------ #
#


def get_attrs_by_dev(
    attr: PartitionToken, dev: StrOrPath, *, raise_exception: bool = True
) -> str:  # pragma: no cover
    """Get <attr> from <dev>.

    This is implemented by calling:
        `lsblk -in -o <attr> <dev>`

    Args:
        attr (PartitionToken): the attribute to retrieve from the <dev>.
        dev (StrOrPath): the target device path.
        raise_exception (bool, optional): raise exception on subprocess call failed.
            Defaults to True.

    Returns:
        str: <attr> of <dev>.
    """
    cmd = ["lsblk", "-ino", attr, str(dev)]
    return subprocess_check_output(cmd, raise_exception=raise_exception)


def get_dev_by_token(
    token: PartitionToken, value: str, *, raise_exception: bool = True
) -> list[str] | None:  # pragma: no cover
    """Get a list of device(s) that matches the <token>=<value> pair.

    This is implemented by calling:
        blkid -o device -t <TOKEN>=<VALUE>

    Returns:
        Optional[list[str]]: If there is at least one device found, return a list
            contains all found device(s), otherwise None.
    """
    cmd = ["blkid", "-o", "device", "-t", f"{token}={value}"]
    if res := subprocess_check_output(cmd, raise_exception=raise_exception):
        return res.splitlines()


def get_disk_size_in_bytes(
    disk: StrOrPath, *, raise_exception: bool = True
) -> int:  # pragma: no cover
    """Get the size of <disk> in bytes.

    This is implemented by calling:
        blockdev --getsize64 <disk>
    """
    cmd = ["blockdev", "--getsize64", str(disk)]
    return int(subprocess_check_output(cmd, raise_exception=raise_exception) or 0)


def get_device_tree(
    parent_dev: StrOrPath, *, raise_exception: bool = True
) -> list[str]:  # pragma: no cover
    """Get the device tree of a parent device.

    For example, for sda with 3 partitions, we will get:
    ["/dev/sda", "/dev/sda1", "/dev/sda2", "/dev/sda3"]

    This function is implemented by calling:
        lsblk -lnpo NAME <parent_dev>
    """
    cmd = ["lsblk", "-lnpo", "NAME", str(parent_dev)]
    raw_res = subprocess_check_output(cmd, raise_exception=raise_exception)
    return raw_res.splitlines()


def is_target_mounted(
    target: StrOrPath, *, raise_exception: bool = False
) -> bool:  # pragma: no cover
    """Check if <target> is mounted or not. <target> can be a dev or a mount point.

    This is implemented by calling:
        findmnt <target>
    """
    cmd = ["findmnt", str(target)]
    try:
        subprocess_call(cmd, raise_exception=True)
        return True
    except CalledProcessError:
        if raise_exception:
            raise
        return False


#
# ------ partitioning and formatting ------ #
#


def wipefs(disk: StrOrPath, *, raise_exception: bool = True) -> None:  # pragma: no cover
    """Erase all filesystem and partition-table signatures on <disk>.

    This is implemented by calling:
        wipefs -a <disk>
    """
    cmd = ["wipefs", "-a", str(disk)]
    logger.warning(f"wipe all signatures on {disk}")
    subprocess_call(cmd, raise_exception=raise_exception)


def parted_mklabel_gpt(
    disk: StrOrPath, *, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Create a new GPT partition table on <disk>.

    This is implemented by calling:
        parted -s <disk> mklabel gpt
    """
    cmd = ["parted", "-s", str(disk), "mklabel", "gpt"]
    subprocess_call(cmd, raise_exception=raise_exception)


def parted_mkpart(
    disk: StrOrPath,
    *,
    name: str,
    fs_type: str,
    start_mib: int,
    end_mib: int,
    raise_exception: bool = True,
) -> None:  # pragma: no cover
    """Create a partition named <name> on <disk> spanning [<start_mib>, <end_mib>) MiB.

    This is implemented by calling:
        parted -s -a optimal <disk> mkpart <name> <fs_type> <start>MiB <end>MiB
    """
    # fmt: off
    cmd = [
        "parted", "-s", "-a", "optimal", str(disk),
        "mkpart", name, fs_type,
        f"{start_mib}MiB", f"{end_mib}MiB",
    ]
    # fmt: on
    subprocess_call(cmd, raise_exception=raise_exception)


def parted_set_esp(
    disk: StrOrPath, partnum: int, *, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Mark partition <partnum> of <disk> as EFI system partition.

    This is implemented by calling:
        parted -s <disk> set <partnum> esp on
    """
    cmd = ["parted", "-s", str(disk), "set", str(partnum), "esp", "on"]
    subprocess_call(cmd, raise_exception=raise_exception)


def partprobe(disk: StrOrPath, *, raise_exception: bool = True) -> None:  # pragma: no cover
    """Inform the kernel of partition table changes on <disk>."""
    cmd = ["partprobe", str(disk)]
    subprocess_call(cmd, raise_exception=raise_exception)


def mkfs_fat32(
    dev: StrOrPath, *, fslabel: str | None = None, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Create new FAT32 filesystem on <dev>.

    This is implemented by calling:
        mkfs.fat -F 32 [-n <fslabel>] <dev>
    """
    cmd = ["mkfs.fat", "-F", "32"]
    if fslabel:
        cmd.extend(["-n", fslabel])
    cmd.append(str(dev))
    logger.warning(f"format {dev} to fat32: {cmd=}")
    subprocess_call(cmd, raise_exception=raise_exception)


def mkfs_ext4(
    dev: StrOrPath,
    *,
    fslabel: str | None = None,
    fsuuid: str | None = None,
    raise_exception: bool = True,
) -> None:  # pragma: no cover
    """Create new ext4 formatted filesystem on <dev>, optionally with <fslabel>
        and/or <fsuuid>.

    Unlike an in-place reformat, nothing is preserved from the previous filesystem.
    """
    cmd = ["mkfs.ext4", "-F"]
    if fsuuid:
        logger.debug(f"using UUID: {fsuuid}")
        cmd.extend(["-U", fsuuid])
    if fslabel:
        logger.debug(f"using fs LABEL: {fslabel}")
        cmd.extend(["-L", fslabel])

    cmd.append(str(dev))
    logger.warning(f"format {dev} to ext4: {cmd=}")
    subprocess_call(cmd, raise_exception=raise_exception)


def mkswap(
    dev: StrOrPath, *, fslabel: str | None = None, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Set up a swap area on <dev>.

    This is implemented by calling:
        mkswap [-L <fslabel>] <dev>
    """
    cmd = ["mkswap"]
    if fslabel:
        cmd.extend(["-L", fslabel])
    cmd.append(str(dev))
    subprocess_call(cmd, raise_exception=raise_exception)


def swapoff(dev: StrOrPath, *, raise_exception: bool = False) -> None:  # pragma: no cover
    """Disable swapping on <dev>.

    NOTE: by default failure is ignored, <dev> usually is not an active swap.
    """
    cmd = ["swapoff", str(dev)]
    subprocess_call(cmd, raise_exception=raise_exception)


#
# ------ rootfs population ------ #
#


def debootstrap(
    release: str,
    target: StrOrPath,
    mirror: str,
    *,
    arch: str = "amd64",
    raise_exception: bool = True,
) -> None:  # pragma: no cover
    """Bootstrap a minimal base system of <release> into <target>.

    This is implemented by calling:
        debootstrap --arch=<arch> <release> <target> <mirror>
    """
    cmd = ["debootstrap", f"--arch={arch}", release, str(target), mirror]
    logger.info(f"bootstrap {release} into {target} from {mirror}")
    subprocess_call(cmd, raise_exception=raise_exception)


def unsquashfs(
    image: StrOrPath, target: StrOrPath, *, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Extract the squashfs <image> into <target>.

    This is implemented by calling:
        unsquashfs -f -d <target> <image>
    """
    cmd = ["unsquashfs", "-f", "-d", str(target), str(image)]
    subprocess_call(cmd, raise_exception=raise_exception)


def chroot_call(
    root: StrOrPath,
    cmd: str | list[str],
    *,
    input: bytes | None = None,
    raise_exception: bool = True,
) -> None:  # pragma: no cover
    """Run <cmd> inside <root> with chroot."""
    subprocess_call(
        cmd,
        chroot=root,
        env={
            "DEBIAN_FRONTEND": "noninteractive",
            "PATH": "/usr/sbin:/usr/bin:/sbin:/bin",
        },
        input=input,
        raise_exception=raise_exception,
    )


#
# ------ bootloader ------ #
#


def grub_install(
    root: StrOrPath,
    *,
    efi_directory: str,
    boot_directory: str,
    bootloader_id: str,
    raise_exception: bool = True,
) -> None:  # pragma: no cover
    """Install grub EFI binaries for <root>.

    The grub prefix is <boot_directory>/grub, grub.cfg and grubenv are read from there.

    This is implemented by calling inside chroot <root>:
        grub-install --target=x86_64-efi --efi-directory=<efi_directory>
            --boot-directory=<boot_directory> --bootloader-id=<bootloader_id>
    """
    # fmt: off
    cmd = [
        "grub-install",
        "--target=x86_64-efi",
        f"--efi-directory={efi_directory}",
        f"--boot-directory={boot_directory}",
        f"--bootloader-id={bootloader_id}",
    ]
    # fmt: on
    chroot_call(root, cmd, raise_exception=raise_exception)


def grub_reboot(
    entry: str, *, boot_directory: StrOrPath | None = None, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Set the default boot entry for the next boot only.

    This is implemented by calling:
        grub-reboot [--boot-directory=<boot_directory>] <entry>
    """
    cmd = ["grub-reboot"]
    if boot_directory:
        cmd.append(f"--boot-directory={boot_directory}")
    cmd.append(entry)
    subprocess_call(cmd, raise_exception=raise_exception)


def reboot(args: list[str] | None = None) -> NoReturn:  # pragma: no cover
    """Reboot the system, with optional args passed to reboot command.

    This is implemented by calling:
        reboot [args[0], args[1], ...]

    Raises:
        CalledProcessError for the reboot call, or SystemExit on sys.exit(0).
    """
    cmd = ["reboot"]
    if args:
        logger.info(f"will reboot with argument: {args=}")
        cmd.extend(args)

    logger.warning("system will reboot now!")
    subprocess_call(cmd, raise_exception=True)
    sys.exit(0)


#
# ------ mount related helpers ------ #
#

MAX_RETRY_COUNT = 6
RETRY_INTERVAL = 2


def mount(
    target: StrOrPath,
    mount_point: StrOrPath,
    *,
    options: list[str] | None = None,
    params: list[str] | None = None,
    raise_exception: bool = True,
) -> None:  # pragma: no cover
    """Thin wrapper to call mount using subprocess.

    This will call the following:
        mount [-o <option1>,[<option2>[,...]] [<param1> [<param2>[...]]] <target> <mount_point>
    """
    cmd = ["mount"]
    if options:
        cmd.extend(["-o", ",".join(options)])
    if params:
        cmd.extend(params)
    cmd = [*cmd, str(target), str(mount_point)]
    subprocess_call(cmd, raise_exception=raise_exception)


def bind_mount(
    target: StrOrPath, mount_point: StrOrPath, *, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Bind mount <target> to <mount_point>, used for /dev, /proc, /sys in chroot."""
    mount(target, mount_point, params=["--bind"], raise_exception=raise_exception)


def umount(
    target: StrOrPath, *, raise_exception: bool = True
) -> None:  # pragma: no cover
    """Try to umount the <target>.

    Before calling umount, the <target> will be check whether it is mounted,
        if it is not mounted, this function will return directly.
    """
    if not is_target_mounted(target, raise_exception=False):
        return

    _cmd = ["umount", str(target)]
    subprocess_call(_cmd, raise_exception=raise_exception)


def ensure_umount(
    mnt_point: StrOrPath,
    *,
    ignore_error: bool,
    max_retry: int = MAX_RETRY_COUNT,
    retry_interval: int = RETRY_INTERVAL,
) -> None:  # pragma: no cover
    """Try to umount the <mnt_point> at our best.

    Raises:
        If <ignore_error> is False, raises the last failed attemp's CalledProcessError.
    """
    for _retry in range(max_retry + 1):
        try:
            if not is_target_mounted(mnt_point, raise_exception=False):
                break
            umount(mnt_point, raise_exception=True)
        except CalledProcessError as e:
            logger.warning(f"retry#{_retry} failed to umount {mnt_point}: {e!r}")
            logger.warning(f"{e.stderr}\n{e.stdout}")

            if _retry >= max_retry:
                logger.error(f"reached max retry on umounting {mnt_point}, abort")
                if not ignore_error:
                    raise
                return

            time.sleep(retry_interval)
            continue


def ensure_mointpoint(
    mnt_point: StrOrPath, *, ignore_error: bool
) -> None:  # pragma: no cover
    """Ensure the <mnt_point> exists, has no mount on it and ready for mount."""
    mnt_point = Path(mnt_point)
    if mnt_point.is_symlink() or not mnt_point.is_dir():
        mnt_point.unlink(missing_ok=True)

    if not mnt_point.exists():
        mnt_point.mkdir(exist_ok=True, parents=True)
        return

    try:
        ensure_umount(mnt_point, ignore_error=False)
    except Exception as e:
        if not ignore_error:
            logger.error(f"failed to prepare {mnt_point=}: {e!r}")
            raise
        logger.warning(
            f"failed to prepare {mnt_point=}: {e!r} \n"
            f"But still use {mnt_point} and override the previous mount"
        )
