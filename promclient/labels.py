"""Label validation helpers."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence

RESERVED_LABEL_PREFIX = "__"
_CARDINALITY_PREFIX = "inconsistent label cardinality"
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class InconsistentCardinalityError(ValueError):
    """Raised when label values do not match the declared label names."""


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _quote_list(items: Sequence[str]) -> str:
    return "[" + " ".join(_quote(item) for item in items) + "]"


def _is_valid_utf8(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def make_inconsistent_cardinality_error(
    fq_name: str, labels: Sequence[str], label_values: Sequence[str]
) -> InconsistentCardinalityError:
    """Build the error for a mismatch between label names and values."""
    return InconsistentCardinalityError(
        f"{_CARDINALITY_PREFIX}: {_quote(fq_name)} has {len(labels)} variable labels "
        f"named {_quote_list(labels)} but {len(label_values)} values "
        f"{_quote_list(label_values)} were provided"
    )


def validate_values_in_labels(labels: Mapping[str, str], expected_number_of_values: int) -> None:
    """Check a label mapping has the expected size and valid UTF-8 values."""
    if len(labels) != expected_number_of_values:
        shown = ", ".join(f"{_quote(k)}:{_quote(v)}" for k, v in labels.items())
        raise InconsistentCardinalityError(
            f"{_CARDINALITY_PREFIX}: expected {expected_number_of_values} label values "
            f"but got {len(labels)} in Labels{{{shown}}}"
        )
    for name, value in labels.items():
        if not _is_valid_utf8(value):
            raise ValueError(f"label {name}: value {value!r} is not valid UTF-8")


def validate_label_values(values: Sequence[str], expected_number_of_values: int) -> None:
    """Check a sequence of label values has the expected length and valid UTF-8."""
    if len(values) != expected_number_of_values:
        shown = ", ".join(_quote(v) for v in values)
        raise InconsistentCardinalityError(
            f"{_CARDINALITY_PREFIX}: expected {expected_number_of_values} label values "
            f"but got {len(values)} in []string{{{shown}}}"
        )
    for value in values:
        if not _is_valid_utf8(value):
            raise ValueError(f"label value {value!r} is not valid UTF-8")


def check_label_name(name: str) -> bool:
    """Return True if name is a legal, non-reserved label name."""
    return bool(_LABEL_NAME_RE.match(name)) and not name.startswith(RESERVED_LABEL_PREFIX)