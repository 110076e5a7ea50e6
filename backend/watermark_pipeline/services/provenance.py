"""
Watermark Pipeline Backend — Provenance Resolver
==================================================

What:  Works out which registered watermark, if any, a file carries.
How:   Ordered chain of evidence, first match wins:

       1. filename   'watermarked_<8 hex>' in the file name → content whose
                     watermark_id starts with 'wm_<8 hex>'       confidence 0.95
       2. content_hash  SHA-256 of the bytes equals a stored watermarked-file
                        hash, else a stored original-file hash   confidence 0.88
       3. none       no evidence                                 confidence 0.0

       A name that carries a fragment with no matching record falls through
       to the hash strategy. "No evidence" is a normal result, not an error.
Who:   WatermarkPipeline.resolve_provenance and the extract completion job.
       Read-only; safe to call concurrently.
"""

import logging
import re
from typing import Optional

from watermark_pipeline.services.file_service import sha256_hex
from watermark_pipeline.services.records import ProvenanceResult, WatermarkContent
from watermark_pipeline.services.repositories import WatermarkContentStore

logger = logging.getLogger(__name__)

WATERMARK_ID_PREFIX = "wm_"
FILENAME_MARKER = "watermarked_"
FRAGMENT_LENGTH = 8

FILENAME_CONFIDENCE = 0.95
HASH_CONFIDENCE = 0.88

STRATEGY_FILENAME = "filename"
STRATEGY_CONTENT_HASH = "content_hash"
STRATEGY_NONE = "none"

_FRAGMENT_PATTERN = re.compile(
    rf"{FILENAME_MARKER}([0-9a-fA-F]{{{FRAGMENT_LENGTH}}})(?![0-9a-fA-F])"
)


def watermark_fragment(watermark_id: str) -> str:
    """The 8 hex chars written into output file names for this watermark."""
    return watermark_id[len(WATERMARK_ID_PREFIX):][:FRAGMENT_LENGTH]


def watermarked_file_name(watermark_id: str, original_name: str) -> str:
    return f"{FILENAME_MARKER}{watermark_fragment(watermark_id)}_{original_name}"


def find_fragment(file_name: str) -> Optional[str]:
    match = _FRAGMENT_PATTERN.search(file_name or "")
    return match.group(1).lower() if match else None


class ProvenanceResolver:
    def __init__(self, contents: WatermarkContentStore):
        self.contents = contents

    async def resolve(self, file_name: str, content: bytes) -> ProvenanceResult:
        fragment = find_fragment(file_name)
        if fragment is not None:
            match = await self.contents.find_by_id_prefix(WATERMARK_ID_PREFIX + fragment)
            if match is not None:
                return self._result(match, FILENAME_CONFIDENCE, STRATEGY_FILENAME)
            logger.debug("Filename fragment %s has no registered watermark", fragment)

        match = await self.contents.find_by_hash(sha256_hex(content))
        if match is not None:
            return self._result(match, HASH_CONFIDENCE, STRATEGY_CONTENT_HASH)

        return ProvenanceResult(confidence=0.0, strategy=STRATEGY_NONE)

    @staticmethod
    def _result(match: WatermarkContent, confidence: float, strategy: str) -> ProvenanceResult:
        logger.info("Provenance resolved to %s via %s", match.watermark_id, strategy)
        return ProvenanceResult(
            watermark_id=match.watermark_id,
            content=match.content,
            confidence=confidence,
            strategy=strategy,
        )
