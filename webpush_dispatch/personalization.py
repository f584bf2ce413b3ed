"""Resolution of ``[[[name]]]`` placeholders in message titles and bodies."""

from __future__ import annotations

import re
from typing import Mapping, Optional, Set

PLACEHOLDER_PATTERN = re.compile(r"\[\[\[([\w.\-]+)\]\]\]")


def _lower_keys(fields: Optional[Mapping[str, Optional[str]]]) -> dict:
    return {key.lower(): value for key, value in (fields or {}).items()}


def resolve(template: Optional[str], fields: Optional[Mapping[str, Optional[str]]]) -> Optional[str]:
    """Replace known placeholders with their values.

    Keys match case-insensitively. Placeholders without a key are left as
    written, and ``None`` values become empty strings.
    """
    if template is None or fields is None:
        return template
    values = _lower_keys(fields)

    def _substitute(match: re.Match) -> str:
        key = match.group(1).lower()
        if key not in values:
            return match.group(0)
        return values[key] or ""

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


def find_missing_placeholders(
    template: Optional[str], fields: Optional[Mapping[str, Optional[str]]]
) -> Set[str]:
    """Return placeholder names (as written in ``template``) that have no key in ``fields``."""
    if not template:
        return set()
    known = set(_lower_keys(fields))
    return {
        match.group(1)
        for match in PLACEHOLDER_PATTERN.finditer(template)
        if match.group(1).lower() not in known
    }
