import httpx
import pytest
from pathlib import Path

from app.errors import DownloadError, MediaValidationError, SourceUnavailableError, is_retryable
from app.services.downloader import download_source


def _transport(status_code=200, body=b"video-bytes", headers=None, exc=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if exc is not None:
            raise exc
        return httpx.Response(status_code, content=body, headers=headers or {})

    return httpx.MockTransport(handler)


def test_download_writes_file(tmp_path: Path):
    destination = tmp_path / "source.mp4"

    result = download_source("https://cdn.test/v1.mp4", destination, transport=_transport())

    assert result == destination
    assert destination.read_bytes() == b"video-bytes"


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_transient_http_errors_are_retryable(tmp_path: Path, status_code):
    with pytest.raises(DownloadError) as excinfo:
        download_source("https://cdn.test/v1.mp4", tmp_path / "s.mp4", transport=_transport(status_code))

    assert is_retryable(excinfo.value)


def test_missing_source_is_not_retryable(tmp_path: Path):
    with pytest.raises(SourceUnavailableError) as excinfo:
        download_source("https://cdn.test/v1.mp4", tmp_path / "s.mp4", transport=_transport(404))

    assert not is_retryable(excinfo.value)


def test_network_failure_is_retryable_and_leaves_no_file(tmp_path: Path):
    destination = tmp_path / "s.mp4"

    with pytest.raises(DownloadError):
        download_source(
            "https://cdn.test/v1.mp4",
            destination,
            transport=_transport(exc=httpx.ConnectError("refused")),
        )

    assert not destination.exists()


def test_oversize_source_rejected(tmp_path: Path):
    destination = tmp_path / "s.mp4"

    with pytest.raises(MediaValidationError):
        download_source("https://cdn.test/v1.mp4", destination, max_bytes=4, transport=_transport())

    assert not destination.exists()


def test_empty_source_rejected(tmp_path: Path):
    with pytest.raises(MediaValidationError):
        download_source("https://cdn.test/v1.mp4", tmp_path / "s.mp4", transport=_transport(body=b""))


def test_total_timeout_enforced(tmp_path: Path):
    ticks = iter([0.0, 10_000.0])
    destination = tmp_path / "s.mp4"

    with pytest.raises(DownloadError):
        download_source(
            "https://cdn.test/v1.mp4",
            destination,
            total_timeout=60,
            transport=_transport(),
            clock=lambda: next(ticks),
        )

    assert not destination.exists()
