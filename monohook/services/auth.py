"""
Trigger authorization.

A request may carry the shared secret either as a Bearer token in the
``Authorization`` header or as the ``authorization`` URL query parameter.
"""
from __future__ import annotations

from typing import Iterable, Mapping, Optional, Tuple

BEARER_PREFIX = "Bearer "
QUERY_PARAMETER = "authorization"


def is_authorized(
    secret: Optional[str],
    headers: Mapping[str, str],
    query_params: Iterable[Tuple[str, str]],
) -> bool:
    """Return True when the request may trigger the hook.

    ``query_params`` is a sequence of ``(name, value)`` pairs so that any one
    of several ``authorization`` occurrences can match.
    """
    if not secret:
        return True

    header = headers.get("authorization") or ""
    if header.startswith(BEARER_PREFIX) and header[len(BEARER_PREFIX):] == secret:
        return True

    return any(name == QUERY_PARAMETER and value == secret for name, value in query_params)
