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

from hashlib import sha256
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import pytest
import requests
from pytest_mock import MockerFixture

from devinit.assets import AssetFetcher
from devinit.errors import AssetDownloadFailed

MODULE = AssetFetcher.__module__

TEST_URL = "http://192.168.10.1:8080/assets/rootfs.squashfs"
TEST_DATA = b"rootfs-image-content" * 1024


def _mock_response(chunks: List[bytes]) -> MagicMock:
    resp = MagicMock()
    resp.iter_content.return_value = iter(chunks)
    return resp


class TestAssetFetcher:
    @pytest.fixture(autouse=True)
    def mock_setup(self, mocker: MockerFixture):
        self.session = MagicMock()
        self.wait_with_backoff = mocker.patch(f"{MODULE}.wait_with_backoff")
        self.fetcher = AssetFetcher(retry=2, chunk_size=4096, session=self.session)

    def _set_responses(self, *resps: MagicMock):
        self.session.get.return_value.__enter__.side_effect = list(resps)

    def test_fetch(self, tmp_path: Path):
        self._set_responses(_mock_response([TEST_DATA[:4096], TEST_DATA[4096:]]))
        _dst = tmp_path / "download" / "rootfs.squashfs"

        assert (
            self.fetcher.fetch(TEST_URL, _dst, digest=sha256(TEST_DATA).hexdigest())
            == _dst
        )
        assert _dst.read_bytes() == TEST_DATA
        self.session.get.assert_called_with(TEST_URL, stream=True, timeout=self.fetcher.timeout)

    def test_retry_on_digest_mismatch(self, tmp_path: Path):
        self._set_responses(
            _mock_response([b"corrupted"]),
            _mock_response([TEST_DATA]),
        )
        _dst = tmp_path / "rootfs.squashfs"

        self.fetcher.fetch(TEST_URL, _dst, digest=sha256(TEST_DATA).hexdigest())
        assert _dst.read_bytes() == TEST_DATA
        self.wait_with_backoff.assert_called_once()

    def test_digest_mismatch_exceed_retry(self, tmp_path: Path):
        self._set_responses(*[_mock_response([b"corrupted"]) for _ in range(3)])
        _dst = tmp_path / "rootfs.squashfs"

        with pytest.raises(AssetDownloadFailed) as exc_info:
            self.fetcher.fetch(
                TEST_URL, _dst, digest=sha256(TEST_DATA).hexdigest(), stage="install-os1"
            )
        assert exc_info.value.stage == "install-os1"
        assert exc_info.value.underlying_code is None
        assert not _dst.exists()

    def test_http_error(self, tmp_path: Path):
        _resp = _mock_response([])
        _http_error = requests.HTTPError("404 Client Error")
        _http_error.response = MagicMock(status_code=404)
        _resp.raise_for_status.side_effect = _http_error
        self._set_responses(_resp)
        _dst = tmp_path / "rootfs.squashfs"

        with pytest.raises(AssetDownloadFailed) as exc_info:
            self.fetcher.fetch(TEST_URL, _dst)
        assert exc_info.value.underlying_code == 404
        assert not _dst.exists()
        self.wait_with_backoff.assert_not_called()

    def test_connection_error(self, tmp_path: Path):
        self.session.get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(AssetDownloadFailed) as exc_info:
            self.fetcher.fetch(TEST_URL, tmp_path / "rootfs.squashfs")
        assert exc_info.value.underlying_code is None

    def test_skip_already_downloaded(self, tmp_path: Path):
        _dst = tmp_path / "rootfs.squashfs"
        _dst.write_bytes(TEST_DATA)

        assert (
            self.fetcher.fetch(TEST_URL, _dst, digest=sha256(TEST_DATA).hexdigest())
            == _dst
        )
        self.session.get.assert_not_called()
