"""
Watermark Pipeline Backend — File Service Unit Tests
======================================================

What:  Validation, storage, URL mapping and retrieval in FileService.
How:   Each test gets a FileService rooted in a temporary directory; remote
       downloads go through httpx.MockTransport (see conftest).

Test Strategy:
    ✅ Allowed document extensions, case-insensitive
    ✅ Size limits (reported and actual) and empty files
    ✅ Stored names keep the sanitized original name
    ✅ Path traversal is rejected
    ✅ fetch(): local URLs read from disk, other URLs downloaded
"""

from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from watermark_pipeline.exceptions import FileStorageError, NotFoundError, ValidationError
from watermark_pipeline.services.file_service import (
    FileService,
    file_name_from_url,
    sanitize_file_name,
    sha256_hex,
)


class TestFileValidation:
    """Tests for file validation logic in FileService."""

    @pytest.mark.parametrize(
        "name", ["a.pdf", "a.doc", "a.docx", "a.xls", "a.xlsx", "a.ppt", "a.pptx", "REPORT.PDF"]
    )
    def test_allowed_extensions(self, file_service, name):
        assert file_service.validate_extension(name) == Path(name).suffix.lower()

    @pytest.mark.parametrize("name", ["photo.jpg", "notes.txt", "malware.exe", "noextension"])
    def test_rejected_extensions(self, file_service, name):
        with pytest.raises(ValidationError, match="not supported"):
            file_service.validate_extension(name)

    def test_size_within_limit(self, file_service):
        file_service.validate_size(None, 1000)

    def test_reported_size_over_limit(self, file_service):
        with patch("watermark_pipeline.services.file_service.settings") as mock_settings:
            mock_settings.max_file_size = 1024
            with pytest.raises(ValidationError, match="exceeds"):
                file_service.validate_size(2048, 10)

    def test_actual_size_over_limit(self, file_service):
        with patch("watermark_pipeline.services.file_service.settings") as mock_settings:
            mock_settings.max_file_size = 1024
            with pytest.raises(ValidationError, match="exceeds"):
                file_service.validate_size(None, 1025)

    def test_empty_file(self, file_service):
        with pytest.raises(ValidationError, match="empty"):
            file_service.validate_size(None, 0)


class TestHelpers:
    def test_sha256_hex(self):
        assert sha256_hex(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("report.pdf", "report.pdf"),
            ("../../etc/passwd", "passwd"),
            ("quarterly report (final).docx", "quarterly_report_final_.docx"),
            ("...", "file"),
        ],
    )
    def test_sanitize_file_name(self, name, expected):
        assert sanitize_file_name(name) == expected

    def test_file_name_from_url(self):
        assert file_name_from_url("http://h/a/b/my%20file.pdf?x=1") == "my file.pdf"
        assert file_name_from_url("http://h/") == ""


class TestStorage:
    @pytest.mark.asyncio
    async def test_validate_and_store_keeps_name(self, file_service, temp_storage):
        stored = await file_service.validate_and_store("report.pdf", b"%PDF-1.7")

        assert stored.file_name == "report.pdf"
        assert stored.size == 8
        assert stored.sha256 == sha256_hex(b"%PDF-1.7")
        assert stored.file_url == f"http://testserver/api/files/{stored.relative_path}"
        assert Path(stored.absolute_path).read_bytes() == b"%PDF-1.7"
        assert Path(stored.absolute_path).is_relative_to(Path(temp_storage).resolve())

    @pytest.mark.asyncio
    async def test_same_name_twice_does_not_collide(self, file_service):
        first = await file_service.validate_and_store("report.pdf", b"one")
        second = await file_service.validate_and_store("report.pdf", b"two")

        assert first.relative_path != second.relative_path

    @pytest.mark.asyncio
    async def test_anonymous_content_gets_uuid_name(self, file_service):
        stored = await file_service.store_file(b"data", ".pdf")
        assert stored.file_name.endswith(".pdf")
        assert len(Path(stored.file_name).stem) == 36

    @pytest.mark.asyncio
    async def test_write_failure(self, file_service):
        with patch("aiofiles.open", side_effect=OSError("disk full")):
            with pytest.raises(FileStorageError):
                await file_service.store_file(b"data", ".pdf")

    @pytest.mark.asyncio
    async def test_cleanup_file(self, file_service):
        stored = await file_service.store_file(b"data", ".pdf")
        await file_service.cleanup_file(stored.absolute_path)
        assert not Path(stored.absolute_path).exists()


class TestRetrieval:
    def test_traversal_rejected(self, file_service):
        with pytest.raises(NotFoundError):
            file_service.resolve_storage_path("../../etc/passwd")

    def test_local_relative_path(self, file_service):
        assert file_service.local_relative_path("http://testserver/api/files/2026/a.pdf") == "2026/a.pdf"
        assert file_service.local_relative_path("http://elsewhere/api/files/2026/a.pdf") is None

    @pytest.mark.asyncio
    async def test_fetch_local(self, file_service):
        stored = await file_service.validate_and_store("report.pdf", b"%PDF local")

        fetched = await file_service.fetch(stored.file_url)

        assert fetched.file_name == "report.pdf"
        assert fetched.content == b"%PDF local"
        assert fetched.sha256 == stored.sha256

    @pytest.mark.asyncio
    async def test_fetch_remote(self, file_service):
        fetched = await file_service.fetch("http://results.watermark.test/out/x.pdf")

        assert fetched.file_name == "x.pdf"
        assert fetched.content.startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_download_http_error(self, file_service):
        with pytest.raises(FileStorageError, match="404"):
            await file_service.download("http://results.watermark.test/nothing")

    @pytest.mark.asyncio
    async def test_download_transport_error(self, temp_storage):
        def refuse(request):
            raise httpx.ConnectError("refused")

        service = FileService(temp_storage, "http://testserver", transport=httpx.MockTransport(refuse))
        with pytest.raises(FileStorageError):
            await service.download("http://down.test/a.pdf")

    @pytest.mark.asyncio
    async def test_download_requires_http_url(self, file_service):
        with pytest.raises(ValidationError):
            await file_service.download("file:///etc/passwd")
