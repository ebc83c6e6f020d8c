"""
Serve files of the mirror's current snapshot.

Each request takes one snapshot lease up front, so all bytes of a response
come from a single consistent tree even if a refresh swaps the current
snapshot while the response is still streaming.
"""
from __future__ import annotations

import json
import logging
import mimetypes
import os
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import quote, unquote

import aiofiles
from fastapi.templating import Jinja2Templates

from index_mirror.data.mirror import RepositoryMirror, SnapshotLease
from index_mirror.domain.errors import (
    MirrorNotReadyError,
    NotFoundError,
    ReadError,
    RequestError,
    RequestPathError,
)
from index_mirror.domain.models import IndexRequest, IndexResponse

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
HIDDEN_NAMES = {".git"}
TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"


def normalize_request_path(request_path: str) -> Tuple[str, ...]:
    """
    Split a request path into safe, relative path segments.

    Raises RequestPathError for traversal attempts, both literal and
    percent-encoded.
    """
    for candidate in (request_path, unquote(request_path)):
        if "\x00" in candidate or "\\" in candidate:
            raise RequestPathError(f"Invalid character in path: {request_path!r}")
        for part in candidate.split("/"):
            if part == "..":
                raise RequestPathError(f"Path traversal rejected: {request_path!r}")
            if len(part) >= 2 and part[1] == ":" and part[0].isalpha():
                raise RequestPathError(f"Drive-qualified path rejected: {request_path!r}")

    return tuple(part for part in request_path.split("/") if part not in ("", "."))


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    if not if_none_match:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


class SnapshotFileStream:
    """
    Async iterable over one opened file of a leased snapshot.

    Closing (explicitly or by exhausting the iterator) closes the file and
    releases the lease. aclose() is idempotent.
    """

    def __init__(self, handle, lease: SnapshotLease, first_chunk: bytes, path: Path):
        self._handle = handle
        self._lease = lease
        self._first_chunk = first_chunk
        self.path = path
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            if self._first_chunk:
                yield self._first_chunk
            while True:
                chunk = await self._handle.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        except OSError as e:
            logger.error(f"Read of {self.path} failed mid-stream: {e}")
            raise
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._handle.close()
        finally:
            self._lease.release()


class IndexFileServer:
    """
    Maps request paths to files under the mirror's current snapshot.
    The server never writes to the mirror.
    """

    def __init__(self, mirror: RepositoryMirror, show_listing: bool = True):
        self.mirror = mirror
        self.show_listing = show_listing
        self.templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    async def handle(self, request_path: str, if_none_match: Optional[str] = None) -> IndexResponse:
        request = IndexRequest(requested_path=request_path, if_none_match=if_none_match)
        try:
            return await self._serve(request)
        except ReadError as e:
            logger.error(f"Failed to read {request.requested_path}: {e}")
            return self._error_response(e.status_code, "Failed to read file")
        except RequestError as e:
            return self._error_response(e.status_code, str(e) or "Not Found")
        except MirrorNotReadyError:
            response = self._error_response(503, "Mirror is not ready yet")
            response.headers["Retry-After"] = "5"
            return response

    async def _serve(self, request: IndexRequest) -> IndexResponse:
        parts = normalize_request_path(request.requested_path)
        if any(part in HIDDEN_NAMES for part in parts):
            raise NotFoundError("Not Found")

        lease = self.mirror.lease()
        handed_off = False
        try:
            root = lease.root
            target = self._resolve(root, parts)

            if target.is_dir():
                if not self.show_listing:
                    raise NotFoundError("Not Found")
                return self._listing(target, parts)
            if not target.is_file():
                raise NotFoundError("Not Found")

            etag = f'"{lease.state.revision}"'
            headers = {
                "ETag": etag,
                "Cache-Control": "no-cache",
            }
            if etag_matches(request.if_none_match, etag):
                return IndexResponse(status=304, headers=headers)

            try:
                handle = await aiofiles.open(target, "rb")
            except OSError as e:
                raise ReadError(str(e)) from e
            try:
                size = os.fstat(handle.fileno()).st_size
                first_chunk = await handle.read(CHUNK_SIZE)
            except OSError as e:
                await handle.close()
                raise ReadError(str(e)) from e

            content_type, _ = mimetypes.guess_type(target.name)
            headers["Content-Type"] = content_type or "application/octet-stream"
            headers["Content-Length"] = str(size)

            stream = SnapshotFileStream(handle, lease, first_chunk, target)
            handed_off = True
            return IndexResponse(status=200, headers=headers, body=stream)
        finally:
            if not handed_off:
                lease.release()

    def _resolve(self, root: Path, parts: Tuple[str, ...]) -> Path:
        target = root.joinpath(*parts)
        # Symlinks inside the tree must not lead outside of it.
        real_root = os.path.realpath(root)
        real_target = os.path.realpath(target)
        if real_target != real_root and not real_target.startswith(real_root + os.sep):
            raise RequestPathError("Path escapes the mirror root")
        return target

    def _listing(self, directory: Path, parts: Tuple[str, ...]) -> IndexResponse:
        try:
            children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        except OSError as e:
            raise ReadError(str(e)) from e

        current = "/" + "/".join(parts)
        if parts:
            current += "/"

        entries: List[dict] = []
        for child in children:
            if child.name.startswith("."):
                continue
            is_dir = child.is_dir()
            name = child.name + ("/" if is_dir else "")
            entries.append({"name": name, "href": quote(current + name)})
        html = self.templates.get_template("listing.html").render(
            path=current,
            parent=quote("/".join(("",) + parts[:-1]) + "/") if parts else None,
            entries=entries,
        )
        body = html.encode("utf-8")
        return IndexResponse(
            status=200,
            headers={
                "Content-Type": "text/html; charset=utf-8",
                "Content-Length": str(len(body)),
            },
            body=body,
        )

    @staticmethod
    def _error_response(status_code: int, detail: str) -> IndexResponse:
        body = json.dumps({"detail": detail}).encode("utf-8")
        return IndexResponse(
            status=status_code,
            headers={
                "Content-Type": "application/json",
                "Content-Length": str(len(body)),
            },
            body=body,
        )
