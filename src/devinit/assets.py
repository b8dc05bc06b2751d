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
"""Fetcher for network-boot delivered assets.

Kernel, initrd and the compressed rootfs image are served over HTTP by the PXE server.
"""


from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from devinit.configs.cfg import cfg
from devinit.errors import AssetDownloadFailed
from devinit_common._io import file_sha256
from devinit_common._typing import StrOrPath
from devinit_common.common import wait_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_POOL_SIZE = 4
# retry on common server-side errors and client-side errors
DEFAULT_RETRY_STATUS = frozenset([413, 429, 500, 502, 503, 504])


class HashVerificationError(Exception): ...


class AssetFetcher:
    """Download assets from the PXE server, optionally verifying sha256 digest.

    Connection level errors and retryable status codes are retried by the
        underlying requests.Session, a digest mismatch is retried with backoff
        up to <retry> times.
    """

    def __init__(
        self,
        *,
        chunk_size: int = cfg.CHUNK_SIZE,
        retry: int = cfg.DOWNLOAD_RETRY,
        backoff_factor: float = cfg.DOWNLOAD_BACKOFF_FACTOR,
        backoff_max: float = cfg.DOWNLOAD_BACKOFF_MAX,
        timeout: int = cfg.DOWNLOAD_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.retry = retry
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self.timeout = timeout

        if session is None:
            session = requests.Session()
            http_adapter = HTTPAdapter(
                pool_connections=DEFAULT_CONNECTION_POOL_SIZE,
                pool_maxsize=DEFAULT_CONNECTION_POOL_SIZE,
                max_retries=Retry(
                    total=retry,
                    status_forcelist=DEFAULT_RETRY_STATUS,
                    allowed_methods=["GET"],
                ),
            )
            session.mount("https://", http_adapter)
            session.mount("http://", http_adapter)
        self._session = session

    def close(self) -> None:
        self._session.close()

    def _download(self, url: str, dst: Path, *, digest: Optional[str]) -> int:
        digestobj = hashlib.sha256()
        downloaded_size = 0
        with self._session.get(url, stream=True, timeout=self.timeout) as resp, open(
            dst, "wb"
        ) as dst_fp:
            resp.raise_for_status()
            for _chunk in resp.iter_content(chunk_size=self.chunk_size):
                digestobj.update(_chunk)
                dst_fp.write(_chunk)
                downloaded_size += len(_chunk)

        if digest and ((calc_digest := digestobj.hexdigest()) != digest.lower()):
            _err_msg = f"hash verification failed: {digest=} != {calc_digest=} for {url}"
            raise HashVerificationError(_err_msg)
        return downloaded_size

    def fetch(
        self,
        url: str,
        dst: StrOrPath,
        *,
        digest: Optional[str] = None,
        stage: str = "download",
    ) -> Path:
        """Download <url> to <dst>.

        Raises:
            AssetDownloadFailed on network failure or on digest mismatch after all retries.
        """
        dst = Path(dst)
        dst.parent.mkdir(exist_ok=True, parents=True)
        if digest and dst.is_file() and file_sha256(dst) == digest.lower():
            logger.info(f"{dst} with {digest=} is already downloaded, skip")
            return dst

        for _retry in range(self.retry + 1):
            try:
                _size = self._download(url, dst, digest=digest)
                logger.info(f"downloaded {url} to {dst} ({_size} bytes)")
                return dst
            except HashVerificationError as e:
                logger.warning(f"retry#{_retry}: {e!r}")
                dst.unlink(missing_ok=True)
                if _retry >= self.retry:
                    _err_msg = f"failed to fetch {url}: {e!r}"
                    logger.error(_err_msg)
                    raise AssetDownloadFailed(
                        _err_msg, module=__name__, stage=stage, underlying_code=None
                    ) from e
                wait_with_backoff(
                    _retry + 1,
                    _backoff_factor=self.backoff_factor,
                    _backoff_max=self.backoff_max,
                )
            except (requests.RequestException, OSError) as e:
                dst.unlink(missing_ok=True)
                _status = getattr(getattr(e, "response", None), "status_code", None)
                _err_msg = f"failed to fetch {url}: {e!r}"
                logger.error(_err_msg)
                raise AssetDownloadFailed(
                    _err_msg, module=__name__, stage=stage, underlying_code=_status
                ) from e
        # unreachable, the loop either returns or raises
        raise AssertionError
