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
"""devinit internal uses consts, should not be changed from external."""

from __future__ import annotations

from devinit_common._typing import StrEnum

CANONICAL_ROOT = "/"


class SwapSizePolicy(StrEnum):
    FIXED = "fixed"  # default
    RAM = "ram"


class FactoryResetMode(StrEnum):
    FULL = "full"
    OS_ONLY = "os-only"


class Consts:
    CANONICAL_ROOT = CANONICAL_ROOT

    #
    # ------ paths ------ #
    #
    RUN_DIR = "/run/devinit"
    DEVINIT_PID_FILE = "/run/devinit.pid"

    MOUNT_SPACE = "/run/devinit/mnt"
    TARGET_SLOT_MNT = "/run/devinit/mnt/target_slot"
    ESP_MNT = "/run/devinit/mnt/esp"
    DOWNLOAD_DPATH = "/run/devinit/download"

    # the Data partition is mounted here in both the network-booted
    #   environment and the installed slots
    DATA_MNT = "/data"
    DEVICE_STATE_FPATH = "/data/devinit/device_state.json"
    # used while no Data partition is available, i.e., at first network boot
    BOOTSTRAP_DEVICE_STATE_FPATH = "/run/devinit/device_state.json"
    FAILURE_JOURNAL_FPATH = "/run/devinit/failure_journal.log"

    PROC_MEMINFO = "/proc/meminfo"
    PROC_CMDLINE = "/proc/cmdline"

    #
    # ------ installed slot layout ------ #
    #
    FSTAB_FPATH = "/etc/fstab"
    HOSTNAME_FPATH = "/etc/hostname"
    HOSTS_FPATH = "/etc/hosts"
    TIMEZONE_FPATH = "/etc/timezone"
    LOCALTIME_FPATH = "/etc/localtime"
    ZONEINFO_DPATH = "/usr/share/zoneinfo"
    NETPLAN_FPATH = "/etc/netplan/01-devinit.yaml"
    ROOT_AUTHORIZED_KEYS_FPATH = "/root/.ssh/authorized_keys"
    ESP_MOUNT_POINT_IN_SLOT = "/boot/efi"

    # relative to the ESP root
    GRUB_CFG_ON_ESP = "grub/grub.cfg"

    KERNEL_PATH = "/boot/vmlinuz"
    INITRD_PATH = "/boot/initrd.img"

    #
    # ------ partition layout consts ------ #
    #
    # sizes are in MiB
    ALIGNMENT_GAP_MIB = 1
    ESP_SIZE_MIB = 512
    ROOT_SIZE_MIB = 2048
    SWAP_MAX_SIZE_MIB = 4096
    OS_SLOT_SIZE_MIB = 3792  # 3.7GiB, MiB aligned
    GPT_BACKUP_RESERVE_MIB = 1
    DATA_WARN_SIZE_MIB = 1024

    ESP_LABEL = "EFI"
    ROOT_LABEL = "INIT-ROOT"
    SWAP_LABEL = "SWAP"
    OS1_LABEL = "OS1-ROOT"
    OS2_LABEL = "OS2-ROOT"
    DATA_LABEL = "DATA"

    #
    # ------ boot menu consts ------ #
    #
    OS1_BOOT_ENTRY_ID = "boot-os1"
    OS2_BOOT_ENTRY_ID = "boot-os2"
    OS1_BOOTLOADER_ID = "ubuntu-os1"
    OS2_BOOTLOADER_ID = "ubuntu-os2"

    DEFAULT_HOSTNAME = "edge-device"
    DEFAULT_TIMEZONE = "UTC"
    DEFAULT_DNS_SERVERS = ("8.8.8.8", "8.8.4.4")

    DIAGNOSTIC_SHELL = "/bin/bash"
