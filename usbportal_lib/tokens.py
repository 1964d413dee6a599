"""Correlation tokens and the object paths derived from them."""

from __future__ import annotations

import itertools
import secrets
from typing import Callable, Iterator, Optional

from .const import REQUEST_PATH_PREFIX, SESSION_PATH_PREFIX, TOKEN_MAX, TOKEN_PREFIX

TokenGenerator = Callable[[], str]


def random_token() -> str:
    """Return a fresh `portal<N>` token."""
    return f"{TOKEN_PREFIX}{secrets.randbelow(TOKEN_MAX)}"


def sequential_tokens(start: int = 0, *, prefix: str = TOKEN_PREFIX) -> TokenGenerator:
    """Return a deterministic generator (portal0, portal1, ...)."""
    counter: Iterator[int] = itertools.count(start)

    def _next() -> str:
        return f"{prefix}{next(counter)}"

    return _next


def sender_from_unique_name(unique_name: Optional[str]) -> str:
    """
    Convert a bus unique name (":1.42") into the path element the broker
    uses for request and session handles ("1_42").
    """
    if not unique_name:
        raise ValueError("unique_name must be a non-empty bus name")
    name = unique_name[1:] if unique_name.startswith(":") else unique_name
    return name.replace(".", "_")


def request_path(sender: str, token: str) -> str:
    return f"{REQUEST_PATH_PREFIX}{sender}/{token}"


def session_path(sender: str, token: str) -> str:
    return f"{SESSION_PATH_PREFIX}{sender}/{token}"


__all__ = [
    "TokenGenerator",
    "random_token",
    "request_path",
    "sender_from_unique_name",
    "sequential_tokens",
    "session_path",
]
