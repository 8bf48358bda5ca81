"""Tests for microvm.kernel module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from microvm.exceptions import FetchError
from microvm.kernel import ensure_kernel, kernel_cached

URL = "https://example.com/vmlinux.bin"


def _response(chunks, status=200, length=None):
    response = MagicMock()
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    response.headers = {"Content-Length": str(length)} if length is not None else {}
    response.iter_content.return_value = iter(chunks)
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} Client Error")
    return response


def _failing_stream(chunks, exc):
    def _gen():
        yield from chunks
        raise exc

    return _gen()


@pytest.fixture
def session():
    with patch("microvm.utils.requests.Session") as session_cls:
        instance = session_cls.return_value
        instance.__enter__.return_value = instance
        instance.__exit__.return_value = False
        yield instance


class TestKernelCached:
    def test_missing(self, tmp_path):
        assert kernel_cached(tmp_path / "vmlinux") is False

    def test_empty_file_is_not_cached(self, tmp_path):
        dest = tmp_path / "vmlinux"
        dest.touch()
        assert kernel_cached(dest) is False

    def test_non_empty(self, tmp_path):
        dest = tmp_path / "vmlinux"
        dest.write_bytes(b"kernel")
        assert kernel_cached(dest) is True


class TestEnsureKernel:
    def test_cache_hit_makes_no_network_calls(self, tmp_path):
        dest = tmp_path / "vmlinux"
        dest.write_bytes(b"kernel")
        with patch("microvm.utils.requests.Session") as mock_session:
            image = ensure_kernel(dest, URL)
        mock_session.assert_not_called()
        assert image.path == dest
        assert image.fetched is False

    def test_download_then_cache_hit(self, tmp_path, session):
        dest = tmp_path / "cache" / "vmlinux"
        session.get.return_value = _response([b"abc", b"def"], length=6)
        first = ensure_kernel(dest, URL, timeout=3)
        second = ensure_kernel(dest, URL, timeout=3)
        assert first.fetched is True
        assert second.fetched is False
        assert dest.read_bytes() == b"abcdef"
        assert session.get.call_count == 1
        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == 3
        assert kwargs["stream"] is True

    def test_session_closed(self, tmp_path, session):
        session.get.return_value = _response([b"kernel"])
        ensure_kernel(tmp_path / "vmlinux", URL)
        session.__exit__.assert_called_once()

    def test_session_closed_on_failure(self, tmp_path, session):
        session.get.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(FetchError):
            ensure_kernel(tmp_path / "vmlinux", URL)
        session.__exit__.assert_called_once()

    def test_no_temporary_files_left(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        session.get.return_value = _response([b"kernel"])
        ensure_kernel(dest, URL)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["vmlinux"]

    def test_connection_error_is_network(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        session.get.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(FetchError) as exc:
            ensure_kernel(dest, URL)
        assert exc.value.reason == "network"
        assert exc.value.stage == "kernel"
        assert not dest.exists()

    def test_http_error_is_network(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        session.get.return_value = _response([], status=404)
        with pytest.raises(FetchError, match="network"):
            ensure_kernel(dest, URL)
        assert not dest.exists()

    def test_timeout_mid_transfer_leaves_no_partial_file(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        response = _response([])
        response.iter_content.return_value = _failing_stream([b"partial"], requests.ReadTimeout("stalled"))
        session.get.return_value = response
        with pytest.raises(FetchError) as exc:
            ensure_kernel(dest, URL, timeout=1)
        assert exc.value.reason == "timeout"
        assert list(tmp_path.iterdir()) == []

    def test_slow_transfer_hits_overall_deadline(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        clock = [1000.0]
        served = []

        def _trickle():
            # each chunk arrives well inside the per-read timeout
            while True:
                clock[0] += 8
                served.append(1)
                yield b"k"

        response = _response([])
        response.iter_content.return_value = _trickle()
        session.get.return_value = response
        with patch("microvm.utils.time.time", side_effect=lambda: clock[0]):
            with pytest.raises(FetchError) as exc:
                ensure_kernel(dest, URL, timeout=30)
        assert exc.value.reason == "timeout"
        assert len(served) == 4
        assert list(tmp_path.iterdir()) == []

    def test_write_error(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        session.get.return_value = _response([b"kernel"])
        with patch("microvm.utils.tempfile.NamedTemporaryFile", side_effect=PermissionError("read-only")):
            with pytest.raises(FetchError) as exc:
                ensure_kernel(dest, URL)
        assert exc.value.reason == "write"
        assert not dest.exists()

    def test_empty_body_never_reaches_destination(self, tmp_path, session):
        dest = tmp_path / "vmlinux"
        session.get.return_value = _response([])
        with (
            patch("microvm.utils.Path.replace") as replace,
            pytest.raises(FetchError, match="empty response") as exc,
        ):
            ensure_kernel(dest, URL)
        assert exc.value.reason == "network"
        replace.assert_not_called()
        assert list(tmp_path.iterdir()) == []
