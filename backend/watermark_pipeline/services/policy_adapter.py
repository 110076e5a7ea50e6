"""
Watermark Pipeline Backend — Policy Adapter
=============================================

What:  Picks an embedding policy, depth and compatibility tier for a file
       type and a sensitivity level.
How:   Static rule tables. The chosen policy is the first policy preferred
       by the file type that the sensitivity also prefers; without overlap,
       the sensitivity's first preference wins. Depth is the larger of the
       two requirements, compatibility the stricter of the two tiers.

Example:
    adapt("xlsx", "high") → policy "2", embed_depth 3, compatibility "high"
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from watermark_pipeline.exceptions import UnsupportedFileTypeError, ValidationError
from watermark_pipeline.services.records import PolicyAdaptation

COMPATIBILITY_RANK = {"low": 1, "medium": 2, "high": 3}


@dataclass(frozen=True)
class _Rule:
    depth: int
    compatibility: str
    preferred_policies: Tuple[str, ...]


FILE_TYPE_RULES: Dict[str, _Rule] = {
    "pdf": _Rule(3, "high", ("1", "2")),
    "doc": _Rule(2, "medium", ("1", "3")),
    "docx": _Rule(2, "medium", ("1", "3")),
    "xls": _Rule(1, "low", ("3",)),
    "xlsx": _Rule(1, "low", ("3",)),
    "ppt": _Rule(2, "medium", ("1", "2")),
    "pptx": _Rule(2, "medium", ("1", "2")),
}

# depth here is the minimum embedding depth the sensitivity demands
SENSITIVITY_RULES: Dict[str, _Rule] = {
    "high": _Rule(3, "high", ("2",)),
    "medium": _Rule(2, "medium", ("1",)),
    "low": _Rule(1, "low", ("3",)),
}


def normalize_file_type(file_type: str) -> str:
    return file_type.strip().lower().lstrip(".")


class PolicyAdapter:
    def adapt(self, file_type: str, sensitivity: str) -> PolicyAdaptation:
        """
        Raises:
            UnsupportedFileTypeError: no rules for this file type
            ValidationError:          unknown sensitivity
        """
        normalized = normalize_file_type(file_type)
        file_rule = FILE_TYPE_RULES.get(normalized)
        if file_rule is None:
            raise UnsupportedFileTypeError(normalized or file_type, supported=FILE_TYPE_RULES)

        sensitivity_rule = SENSITIVITY_RULES.get(sensitivity.strip().lower())
        if sensitivity_rule is None:
            raise ValidationError(
                message=f"Unknown sensitivity '{sensitivity}'. Must be one of: high, medium, low",
                field="sensitivity",
                context={"allowed": sorted(SENSITIVITY_RULES)},
            )

        common = [
            p for p in file_rule.preferred_policies if p in sensitivity_rule.preferred_policies
        ]
        policy_id = common[0] if common else sensitivity_rule.preferred_policies[0]

        compatibility = max(
            file_rule.compatibility,
            sensitivity_rule.compatibility,
            key=COMPATIBILITY_RANK.__getitem__,
        )
        return PolicyAdaptation(
            policy_id=policy_id,
            embed_depth=max(file_rule.depth, sensitivity_rule.depth),
            compatibility=compatibility,
        )
