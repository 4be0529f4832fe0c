"""Gemini Files API client: multipart upload, state polling and cleanup."""

from __future__ import annotations

import json
import logging
import mimetypes
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx

from src.analysis.errors import ProcessingError, TooLargeError, UploadError
from src.analysis.models import Chunk, FileState, RemoteHandle

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"

# Chunk artifacts are streamed to the upload in 1 MiB reads
_UPLOAD_READ_SIZE = 1024 * 1024


class GeminiFileStore:
    """Uploads chunk artifacts to the Gemini Files API and waits for them.

    An ``httpx.Client`` may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise one is created and owned here.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        max_artifact_bytes: int = 200 * 1024 * 1024,
        poll_interval_seconds: float = 2.0,
        timeout_seconds: float = 120.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._max_artifact_bytes = max_artifact_bytes
        self._poll_interval = poll_interval_seconds
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> GeminiFileStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    def upload(self, chunk: Chunk) -> RemoteHandle:
        """Upload a chunk artifact with a single multipart/related request.

        The size ceiling is enforced before the file is read or any request
        is made.

        Raises:
            TooLargeError: artifact exceeds ``max_artifact_bytes``.
            UploadError: transport failure or non-success response.
        """
        size = chunk.artifact.stat().st_size
        if size > self._max_artifact_bytes:
            raise TooLargeError(size, self._max_artifact_bytes)

        mime_type = mimetypes.guess_type(chunk.artifact.name)[0] or "application/octet-stream"
        boundary = f"----lesson-upload-{uuid.uuid4().hex}"
        metadata = {"file": {"display_name": chunk.artifact.name}}
        body, length = _multipart_related(boundary, metadata, chunk.artifact, size, mime_type)

        response = self._request(
            "POST",
            f"{self._base_url}/upload/v1beta/files",
            what=f"Upload of chunk {chunk.index + 1}",
            headers={
                "X-Goog-Upload-Protocol": "multipart",
                "Content-Type": f"multipart/related; boundary={boundary}",
                "Content-Length": str(length),
            },
            content=body,
        )

        data = _json_body(response)
        file_info = data.get("file") or data
        if not isinstance(file_info, dict):
            raise UploadError(
                "Upload response has an unexpected file entry",
                status=response.status_code,
                body=response.text,
            )
        uri = file_info.get("uri")
        if not uri:
            raise UploadError(
                "Upload succeeded but the response carried no file URI",
                status=response.status_code,
                body=response.text,
            )

        handle = RemoteHandle(
            uri=uri,
            name=file_info.get("name", ""),
            mime_type=file_info.get("mimeType") or mime_type,
            state=FileState.parse(file_info.get("state")),
        )
        logger.info("Uploaded chunk %d (%d bytes) as %s", chunk.index + 1, size, handle.name or uri)
        return handle

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def get_state(self, handle: RemoteHandle) -> RemoteHandle:
        """Fetch the current processing state of an uploaded file."""
        response = self._request("GET", handle.uri, what="File status check")
        return replace(handle, state=FileState.parse(_json_body(response).get("state")))

    def await_ready(self, handle: RemoteHandle) -> RemoteHandle:
        """Poll at the fixed interval until the file is ACTIVE or FAILED.

        No overall timeout is imposed here.

        Raises:
            ProcessingError: the service reports FAILED.
        """
        while handle.state is FileState.PROCESSING:
            self._sleep(self._poll_interval)
            handle = self.get_state(handle)

        if handle.state is FileState.FAILED:
            raise ProcessingError(f"Remote processing failed for {handle.name or handle.uri}")
        return handle

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def delete(self, handle: RemoteHandle) -> None:
        """Delete an uploaded file. Raises :class:`UploadError` on failure."""
        self._request("DELETE", handle.uri, what="File deletion")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _request(self, method: str, url: str, *, what: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, params={"key": self._api_key}, **kwargs)
        except httpx.HTTPError as exc:
            raise UploadError(f"{what} failed: {exc}", status=None, body=str(exc)) from exc

        if not response.is_success:
            raise UploadError(
                f"{what} failed: {response.status_code} {response.reason_phrase} - {response.text}",
                status=response.status_code,
                body=response.text,
            )
        return response


def _multipart_related(
    boundary: str,
    metadata: dict[str, Any],
    artifact: Path,
    size: int,
    mime_type: str,
) -> tuple[Iterator[bytes], int]:
    """Build a two-part multipart/related body: JSON metadata, then the file bytes.

    The file is streamed from disk in fixed-size reads. Returns the body
    iterator and its total length.
    """
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--\r\n".encode()

    def body() -> Iterator[bytes]:
        yield head
        with artifact.open("rb") as fh:
            while block := fh.read(_UPLOAD_READ_SIZE):
                yield block
        yield tail

    return body(), len(head) + size + len(tail)


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise UploadError(
            "File store returned a non-JSON response",
            status=response.status_code,
            body=response.text,
        ) from exc
    if not isinstance(data, dict):
        raise UploadError(
            "File store returned an unexpected response shape",
            status=response.status_code,
            body=response.text,
        )
    return data
