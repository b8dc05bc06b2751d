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
"""Runtime configurable configs for devinit."""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from devinit.configs._cfg_consts import FactoryResetMode, SwapSizePolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "DEVINIT_"
LOG_LEVEL_LITERAL = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class _LoggingSettings(BaseModel):
    DEFAULT_LOG_LEVEL: LOG_LEVEL_LITERAL = "INFO"
    LOG_LEVEL_TABLE: Dict[str, LOG_LEVEL_LITERAL] = {
        "devinit": "INFO",
        "devinit_common": "INFO",
    }

    @property
    def LOG_FORMAT(self) -> str:
        """Generate JSON log format string dynamically."""
        log_fields = {
            "timestamp": "%(asctime)s",
            "level": "%(levelname)s",
            "logger": "%(name)s",
            "function": "%(funcName)s",
            "line": "%(lineno)d",
            "message": "%(message)s",
        }
        return json.dumps(log_fields, separators=(",", ":"))

    # if set, log lines are also uploaded to <LOGGING_SERVER>
    LOGGING_SERVER: Optional[str] = None
    LOGGING_SERVER_TIMEOUT: int = 3  # seconds


class _BootMenuSettings(BaseModel):
    # 0 means the default choice is taken without asking the operator
    NETWORK_MENU_TIMEOUT: int = 30  # seconds
    LOCAL_MENU_TIMEOUT: int = 5  # seconds


class _ProvisionSettings(BaseModel):
    SWAP_SIZE_POLICY: SwapSizePolicy = SwapSizePolicy.FIXED

    DISTRO_RELEASE: str = "noble"
    DISTRO_MIRROR: str = "http://archive.ubuntu.com/ubuntu"
    DISTRO_ARCH: str = "amd64"
    KERNEL_PACKAGE: str = "linux-generic"
    EXTRA_PACKAGES: List[str] = [
        "grub-efi-amd64",
        "openssh-server",
        "netplan.io",
        "sudo",
    ]
    INITIAL_ROOT_PASSWORD: str = "ubuntu"

    # when set, the slot rootfs is unpacked from this squashfs image
    #   instead of being bootstrapped from the distro mirror
    ROOTFS_IMAGE_URL: Optional[str] = None
    ROOTFS_IMAGE_SHA256: Optional[str] = None

    FACTORY_RESET_MODE: FactoryResetMode = FactoryResetMode.FULL
    FACTORY_RESET_PRESERVE_SSH_KEYS: bool = True

    #
    # ------ downloading settings ------ #
    #
    DOWNLOAD_RETRY: int = 3
    DOWNLOAD_BACKOFF_MAX: int = 3  # seconds
    DOWNLOAD_BACKOFF_FACTOR: float = 0.1  # seconds
    DOWNLOAD_TIMEOUT: int = 60  # seconds
    CHUNK_SIZE: int = 1024 * 1024  # 1MiB


class ConfigurableSettings(_LoggingSettings, _BootMenuSettings, _ProvisionSettings):
    """devinit runtime configuration settings."""


def set_configs() -> ConfigurableSettings:
    try:

        class _SettingParser(ConfigurableSettings, BaseSettings):
            model_config = SettingsConfigDict(
                validate_default=True,
                env_prefix=ENV_PREFIX,
            )

        _parsed_setting = _SettingParser()
        return ConfigurableSettings.model_construct(**_parsed_setting.model_dump())
    except Exception as e:
        logger.error(f"failed to parse devinit configurable settings: {e!r}")
        logger.warning("use default settings ...")
        return ConfigurableSettings()
