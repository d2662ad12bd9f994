"""Publication reference tokens and citation extraction."""

import random
import re
import string
from typing import List

REFERENCE_LENGTH = 6
REFERENCE_ALPHABET = string.ascii_lowercase + string.digits

# [abc123] or [abc123, def456]
_CITATION_RE = re.compile(
    r"\[([a-z0-9]{6}(?:\s*,\s*[a-z0-9]{6})*)\]"
)
_REFERENCE_RE = re.compile(r"^[a-z0-9]{6}$")


def new_reference(rng: random.Random | None = None) -> str:
    """Return a fresh random reference token."""
    _rng = rng or random.Random()
    return "".join(
        _rng.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH)
    )


def is_reference(value: str) -> bool:
    return isinstance(value, str) and bool(_REFERENCE_RE.match(value))


def extract_references(content: str) -> List[str]:
    """Return the reference tokens cited in *content*.

    Tokens are found inside square brackets, comma separated. Anything
    that does not match the token pattern is ignored. Duplicates are
    collapsed, first occurrence wins.
    """
    found: List[str] = []
    for match in _CITATION_RE.finditer(content or ""):
        for token in match.group(1).split(","):
            token = token.strip()
            if token not in found:
                found.append(token)
    return found
