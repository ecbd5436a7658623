"""Tag Validator.

Structural checks over raw tagged prose: open/close balance, nesting and
empty speaker names.  Problems are reported, never raised; the parser is
tolerant and runs regardless of the outcome.
"""

from __future__ import annotations

import logging
import re

from ..models import ValidationResult
from ..timing import timed_node

log = logging.getLogger(__name__)

OPEN_TAG = re.compile(r"\[CHAR:([^\]]*)\]")
CLOSE_TAG = re.compile(r"\[/CHAR\]")
_ANY_TAG = re.compile(r"(\[CHAR:[^\]]*\])|(\[/CHAR\])")


@timed_node("tag_validator", "programmatic")
def validate_tag_balance(prose) -> ValidationResult:
    """Check *prose* for tag imbalance, nesting and empty speakers.

    Empty or non-string input is vacuously valid.
    """
    if not prose or not isinstance(prose, str):
        return ValidationResult(valid=True)

    errors: list[str] = []

    open_tags = OPEN_TAG.findall(prose)
    close_count = len(CLOSE_TAG.findall(prose))
    if len(open_tags) != close_count:
        errors.append(
            f"TAG_IMBALANCE: {len(open_tags)} opening tags vs {close_count} closing tags"
        )

    depth = 0
    for m in _ANY_TAG.finditer(prose):
        if m.group(1):
            depth += 1
            if depth > 1:
                errors.append(
                    f"NESTED_TAG at position {m.start()}: nested [CHAR] tags are not allowed"
                )
        else:
            depth -= 1
            if depth < 0:
                errors.append(
                    f"UNMATCHED_CLOSE at position {m.start()}: closing tag without opening tag"
                )
                depth = 0
    if depth > 0:
        errors.append(f"UNCLOSED_TAG: {depth} opening tag(s) without closing tags")

    for name in open_tags:
        if not name.strip():
            errors.append(f'EMPTY_SPEAKER at "[CHAR:{name}]": speaker name cannot be empty')

    for error in errors:
        log.warning("Tag validation: %s", error)
    if not errors:
        log.debug("Tag validation passed (%d tags)", len(open_tags))

    return ValidationResult(valid=not errors, errors=errors)
