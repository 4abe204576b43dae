import re
from typing import Any, Optional

_WHITESPACE = re.compile(r"\s+")


def normalize_address(address: Any) -> Optional[str]:
    """
    Trim and collapse internal whitespace.

    Case is preserved, so "Berlin" and "berlin" are distinct cache keys.
    Returns None for empty input.
    """
    if address is None:
        return None
    collapsed = _WHITESPACE.sub(" ", str(address)).strip()
    return collapsed or None
