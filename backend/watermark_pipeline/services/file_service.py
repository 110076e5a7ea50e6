"""
Watermark Pipeline Backend — File Storage Service
===================================================

What:  Stores documents, publishes them under a public URL, reads them back
       by URL, and computes their SHA-256 content hash.
How:   Files live in date-organized directories below storage_root and are
       served by GET /api/files/{path}. URLs under that prefix are resolved
       straight to disk; any other http(s) URL is downloaded with httpx.
Who:   Upload route, WatermarkPipeline (hash + file lookup before task
       creation), TaskWorkerPool (storing watermarked results).

Security Model:
    1. Extension check:  only document types with embedding rules
    2. Size check:       settings.max_file_size, before and after reading
    3. Generated paths:  file names are sanitized and placed in a fresh
                         UUID directory; unnamed content gets a UUID name
    4. Path resolution:  every relative path is resolved and must stay
                         inside storage_root (no traversal)

Directory Structure:
    storage/
    └── 2026/10/19/
        ├── 0c41e9a7d2f8/
        │   └── contract.pdf                           (upload)
        └── 7d2a41c0b3e5/
            └── watermarked_1a2b3c4d_contract.pdf      (embed result)
"""

import hashlib
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import aiofiles
import httpx

from watermark_pipeline.config import settings
from watermark_pipeline.exceptions import FileStorageError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
ALLOWED_EXTENSIONS = {".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx"}

FILES_ROUTE_PREFIX = "/api/files/"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def file_name_from_url(url: str) -> str:
    """Last path segment of a URL, percent-decoded ('' when there is none)."""
    return unquote(Path(urlparse(url).path).name)


def sanitize_file_name(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", Path(name).name).strip("._")
    return cleaned or "file"


@dataclass(frozen=True)
class StoredFile:
    absolute_path: str
    relative_path: str
    file_url: str
    file_name: str
    size: int
    sha256: str


@dataclass(frozen=True)
class FetchedFile:
    file_name: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def sha256(self) -> str:
        return sha256_hex(self.content)


class FileService:
    """
    Manages document storage, public URLs and retrieval.

    Lifecycle of an uploaded document:
        1. validate_and_store(): extension + size checks, write to disk
        2. The returned file_url is handed to embed/extract
        3. fetch(file_url) reads it back (from disk when local) for hashing
        4. The remote service downloads it through GET /api/files/{path}
    """

    def __init__(
        self,
        storage_root: Optional[str] = None,
        public_base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self._transport = transport
        logger.info(
            "FileService initialized with storage_root=%s public_base_url=%s",
            self.storage_root,
            self.public_base_url,
        )

    # ── Validation ────────────────────────────────────────────────────────

    def validate_extension(self, filename: str) -> str:
        """Returns the normalized extension (lowercase with dot) or raises ValidationError."""
        ext = Path(filename).suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message=(
                    f"File type '{ext or filename}' is not supported. "
                    f"Allowed types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
                ),
                field="file",
                context={"extension": ext, "allowed": sorted(ALLOWED_EXTENSIONS)},
            )
        return ext

    def validate_size(self, content_length: Optional[int], actual_size: int) -> None:
        """
        Checks Content-Length first (before reading), then the actual size.

        Raises:
            ValidationError with a human-readable size limit message
        """
        max_mb = settings.max_file_size / (1024 * 1024)

        if content_length and content_length > settings.max_file_size:
            raise ValidationError(
                message=f"File size exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "reported_size": content_length},
            )

        if actual_size > settings.max_file_size:
            raise ValidationError(
                message=f"File size ({actual_size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "actual_size": actual_size},
            )

        if actual_size == 0:
            raise ValidationError(message="File is empty.", field="file")

    # ── Paths & URLs ──────────────────────────────────────────────────────

    def _generate_storage_path(
        self, extension: str, file_name: Optional[str] = None
    ) -> Tuple[Path, str]:
        """
        YYYY/MM/DD/<uuid>.<ext> for anonymous uploads, or
        YYYY/MM/DD/<uuid12>/<sanitized name> when the name itself matters.
        """
        date_dir = datetime.now(timezone.utc).strftime("%Y/%m/%d")
        if file_name:
            relative_path = f"{date_dir}/{uuid.uuid4().hex[:12]}/{sanitize_file_name(file_name)}"
        else:
            relative_path = f"{date_dir}/{uuid.uuid4()}{extension}"
        return self.storage_root / relative_path, relative_path

    def public_url(self, relative_path: str) -> str:
        return f"{self.public_base_url}{FILES_ROUTE_PREFIX}{relative_path}"

    def resolve_storage_path(self, relative_path: str) -> Path:
        """
        Absolute path of a stored file.

        Raises:
            NotFoundError: outside storage_root or missing
        """
        candidate = (self.storage_root / unquote(relative_path)).resolve()
        if candidate != self.storage_root and self.storage_root not in candidate.parents:
            logger.warning("Rejected path outside storage root: %s", relative_path)
            raise NotFoundError(resource="file", resource_id=relative_path)
        if not candidate.is_file():
            raise NotFoundError(resource="file", resource_id=relative_path)
        return candidate

    def local_relative_path(self, url: str) -> Optional[str]:
        """Relative storage path when `url` points at this service's file route."""
        prefix = f"{self.public_base_url}{FILES_ROUTE_PREFIX}"
        if url.startswith(prefix):
            return urlparse(url).path[len(urlparse(prefix).path):]
        return None

    # ── Storage ───────────────────────────────────────────────────────────

    async def store_file(
        self,
        content: bytes,
        extension: str = "",
        file_name: Optional[str] = None,
    ) -> StoredFile:
        """
        Write content to disk asynchronously.

        Raises:
            FileStorageError if directory creation or file write fails.
        """
        absolute_path, relative_path = self._generate_storage_path(extension, file_name)

        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store file at %s: %s", absolute_path, str(e))
            raise FileStorageError(
                message="Failed to save file. Please try again.",
                context={"path": relative_path, "os_error": str(e)},
            ) from e

        logger.info("File stored: %s (%d bytes)", relative_path, len(content))
        return StoredFile(
            absolute_path=str(absolute_path),
            relative_path=relative_path,
            file_url=self.public_url(relative_path),
            file_name=absolute_path.name,
            size=len(content),
            sha256=sha256_hex(content),
        )

    async def validate_and_store(
        self,
        filename: str,
        content: bytes,
        content_length: Optional[int] = None,
    ) -> StoredFile:
        """
        Extension check, size check, then store under the sanitized original
        name (inside a fresh UUID directory). Cheapest checks first.
        """
        ext = self.validate_extension(filename)
        self.validate_size(content_length, len(content))
        return await self.store_file(content, ext, file_name=filename)

    async def cleanup_file(self, file_path: str) -> None:
        """Best-effort removal; failures are logged, never raised."""
        try:
            path = Path(file_path)
            if path.exists():
                os.remove(path)
                logger.info("Cleaned up file: %s", path.name)
        except OSError as e:
            logger.warning("Failed to clean up file %s: %s", file_path, str(e))

    # ── Retrieval ─────────────────────────────────────────────────────────

    async def read_local(self, relative_path: str) -> bytes:
        path = self.resolve_storage_path(relative_path)
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def download(self, url: str) -> bytes:
        """
        GET an http(s) URL and return the body.

        Raises:
            ValidationError:  not an http(s) URL
            FileStorageError: transport failure or non-2xx answer
        """
        if urlparse(url).scheme not in ("http", "https"):
            raise ValidationError(
                message="file_url must be an http(s) URL",
                field="file_url",
                context={"file_url": url},
            )
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Download of %s returned HTTP %d", url, e.response.status_code)
            raise FileStorageError(
                message=f"Could not download file: HTTP {e.response.status_code}",
                context={"file_url": url, "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error("Download of %s failed: %s", url, str(e))
            raise FileStorageError(
                message="Could not download file",
                context={"file_url": url, "error": type(e).__name__},
            ) from e

        if len(response.content) > settings.max_file_size:
            raise ValidationError(
                message="Downloaded file exceeds the maximum file size",
                field="file_url",
                context={"actual_size": len(response.content)},
            )
        return response.content

    async def fetch(self, url: str) -> FetchedFile:
        """Read a file by URL: from disk when it is ours, otherwise over HTTP."""
        relative_path = self.local_relative_path(url)
        if relative_path is not None:
            content = await self.read_local(relative_path)
        else:
            content = await self.download(url)
        return FetchedFile(file_name=file_name_from_url(url) or "file", content=content)
