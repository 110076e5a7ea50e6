"""
Watermark Pipeline Backend — Policy Adapter Unit Tests
========================================================
"""

import pytest

from watermark_pipeline.exceptions import UnsupportedFileTypeError, ValidationError
from watermark_pipeline.services.policy_adapter import PolicyAdapter


class TestPolicyAdapter:
    def setup_method(self):
        self.adapter = PolicyAdapter()

    def test_spreadsheet_with_high_sensitivity(self):
        result = self.adapter.adapt("xlsx", "high")

        assert result.policy_id == "2"
        assert result.embed_depth == 3
        assert result.compatibility == "high"

    def test_pdf_medium_uses_shared_preference(self):
        result = self.adapter.adapt("pdf", "medium")

        assert result.policy_id == "1"
        assert result.embed_depth == 3
        assert result.compatibility == "high"

    def test_docx_low(self):
        result = self.adapter.adapt("docx", "low")

        assert result.policy_id == "3"
        assert result.embed_depth == 2
        assert result.compatibility == "medium"

    def test_input_is_normalized(self):
        assert self.adapter.adapt(".PPTX", " High ") == self.adapter.adapt("pptx", "high")

    @pytest.mark.parametrize("file_type", ["pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx"])
    @pytest.mark.parametrize("sensitivity", ["high", "medium", "low"])
    def test_depth_never_below_sensitivity_minimum(self, file_type, sensitivity):
        minimum = {"high": 3, "medium": 2, "low": 1}[sensitivity]
        assert self.adapter.adapt(file_type, sensitivity).embed_depth >= minimum

    def test_unknown_file_type(self):
        with pytest.raises(UnsupportedFileTypeError) as exc_info:
            self.adapter.adapt("txt", "high")
        assert exc_info.value.file_type == "txt"

    def test_unknown_sensitivity(self):
        with pytest.raises(ValidationError, match="sensitivity"):
            self.adapter.adapt("pdf", "extreme")
