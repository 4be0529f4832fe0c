"""Tests for the Gemini Files API client using httpx.MockTransport (no network)."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from src.analysis.errors import ProcessingError, TooLargeError, UploadError
from src.analysis.file_store import GeminiFileStore
from src.analysis.models import Chunk, FileState, RemoteHandle

FILE_URI = "https://generativelanguage.googleapis.com/v1beta/files/abc123"


def _store(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    max_artifact_bytes: int = 1024,
    sleeps: list[float] | None = None,
) -> GeminiFileStore:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    recorded = sleeps if sleeps is not None else []
    return GeminiFileStore(
        "test-key",
        max_artifact_bytes=max_artifact_bytes,
        poll_interval_seconds=2.0,
        client=client,
        sleep=recorded.append,
    )


@pytest.fixture
def chunk(tmp_path: Path) -> Chunk:
    artifact = tmp_path / "chunk_000.mp4"
    artifact.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)
    return Chunk(index=0, start_offset_seconds=0, end_offset_seconds=300, artifact=artifact)


def _handle(state: FileState = FileState.PROCESSING) -> RemoteHandle:
    return RemoteHandle(uri=FILE_URI, name="files/abc123", mime_type="video/mp4", state=state)


# ---------------------------------------------------------------------------
# upload
# ---------------------------------------------------------------------------


class TestUpload:
    def test_multipart_related_request(self, chunk: Chunk) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "file": {
                        "uri": FILE_URI,
                        "name": "files/abc123",
                        "mimeType": "video/mp4",
                        "state": "PROCESSING",
                    }
                },
            )

        handle = _store(handler).upload(chunk)

        assert handle == _handle(FileState.PROCESSING)
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/upload/v1beta/files"
        assert request.url.params["key"] == "test-key"
        assert request.headers["X-Goog-Upload-Protocol"] == "multipart"
        content_type = request.headers["Content-Type"]
        assert content_type.startswith("multipart/related; boundary=")

        boundary = content_type.split("boundary=", 1)[1]
        body = request.content
        assert body.startswith(f"--{boundary}\r\n".encode())
        assert body.endswith(f"--{boundary}--\r\n".encode())
        assert json.dumps({"file": {"display_name": "chunk_000.mp4"}}).encode() in body
        assert b"Content-Type: video/mp4" in body
        assert chunk.artifact.read_bytes() in body

    def test_body_streamed_in_reads_matches_file(self, chunk: Chunk) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"uri": FILE_URI})

        with patch("src.analysis.file_store._UPLOAD_READ_SIZE", 7):
            _store(handler).upload(chunk)

        request = seen[0]
        boundary = request.headers["Content-Type"].split("boundary=", 1)[1]
        expected_head = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f'{json.dumps({"file": {"display_name": "chunk_000.mp4"}})}\r\n'
            f"--{boundary}\r\n"
            "Content-Type: video/mp4\r\n\r\n"
        ).encode()
        expected = expected_head + chunk.artifact.read_bytes() + f"\r\n--{boundary}--\r\n".encode()

        assert request.content == expected
        assert request.headers["Content-Length"] == str(len(expected))
        assert "Transfer-Encoding" not in request.headers

    def test_non_object_file_entry_raises_upload_error(self, chunk: Chunk) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"file": "files/abc123"})

        with pytest.raises(UploadError, match="unexpected file entry"):
            _store(handler).upload(chunk)

    def test_bare_uri_response(self, chunk: Chunk) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"uri": FILE_URI})

        handle = _store(handler).upload(chunk)
        assert handle.uri == FILE_URI
        assert handle.state is FileState.PROCESSING

    def test_error_status_raises_upload_error(self, chunk: Chunk) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, text="API key not valid")

        with pytest.raises(UploadError) as exc_info:
            _store(handler).upload(chunk)
        assert exc_info.value.status == 403
        assert exc_info.value.body == "API key not valid"

    def test_missing_uri_raises_upload_error(self, chunk: Chunk) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"file": {}})

        with pytest.raises(UploadError, match="no file URI"):
            _store(handler).upload(chunk)

    def test_transport_error_raises_upload_error(self, chunk: Chunk) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UploadError) as exc_info:
            _store(handler).upload(chunk)
        assert exc_info.value.status is None

    def test_too_large_rejected_before_network(self, chunk: Chunk) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"uri": FILE_URI})

        with pytest.raises(TooLargeError) as exc_info:
            _store(handler, max_artifact_bytes=10).upload(chunk)

        assert calls == []
        assert isinstance(exc_info.value, UploadError)
        assert exc_info.value.status == 413


# ---------------------------------------------------------------------------
# await_ready
# ---------------------------------------------------------------------------


class TestAwaitReady:
    def test_polls_until_active(self) -> None:
        states = iter(["PROCESSING", "PROCESSING", "ACTIVE"])
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"state": next(states)})

        sleeps: list[float] = []
        handle = _store(handler, sleeps=sleeps).await_ready(_handle())

        assert handle.state is FileState.ACTIVE
        assert len(requests) == 3
        assert sleeps == [2.0, 2.0, 2.0]
        assert all(str(r.url).startswith(FILE_URI) for r in requests)

    def test_already_active_does_not_poll(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("should not poll")

        handle = _store(handler).await_ready(_handle(FileState.ACTIVE))
        assert handle.state is FileState.ACTIVE

    def test_failed_raises_processing_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"state": "FAILED"})

        with pytest.raises(ProcessingError):
            _store(handler).await_ready(_handle())

    def test_unknown_state_keeps_polling(self) -> None:
        states = iter(["STATE_UNSPECIFIED", "ACTIVE"])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"state": next(states)})

        sleeps: list[float] = []
        handle = _store(handler, sleeps=sleeps).await_ready(_handle())
        assert handle.state is FileState.ACTIVE
        assert len(sleeps) == 2

    def test_status_check_error_raises_upload_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal")

        with pytest.raises(UploadError) as exc_info:
            _store(handler).await_ready(_handle())
        assert exc_info.value.status == 500


class TestDelete:
    def test_sends_delete(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        _store(handler).delete(_handle(FileState.ACTIVE))
        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/v1beta/files/abc123"

    def test_failure_raises_upload_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="not found")

        with pytest.raises(UploadError):
            _store(handler).delete(_handle(FileState.ACTIVE))
