"""Small helpers shared across the service."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TypeVar

K = TypeVar("K")
T = TypeVar("T")


def find(items: Mapping[K, T], predicate: Callable[[T], bool]) -> K | None:
    """Return the key of the first value satisfying ``predicate``, or None."""
    return next((key for key, item in items.items() if predicate(item)), None)


def value_or_zero(value: T | None, zero: T) -> T:
    """Return ``value`` unless it is None, in which case return ``zero``."""
    return zero if value is None else value


def try_and_recover(func: Callable[[], str]) -> str:
    """Run ``func`` and turn any failure into a RuntimeError."""
    try:
        return func()
    except Exception as exc:
        raise RuntimeError(f"recovered from: {exc}") from exc


def _split_scheme(raw: str) -> tuple[str, str]:
    for index, char in enumerate(raw):
        if char.isascii() and char.isalpha():
            continue
        if char.isascii() and (char.isdigit() or char in "+-."):
            if index == 0:
                return "", raw
            continue
        if char == ":":
            if index == 0:
                raise ValueError(f"parse {raw!r}: missing protocol scheme")
            return raw[:index].lower(), raw[index + 1:]
        return "", raw
    return "", raw


def parse_s3_path(s: str) -> tuple[str, str]:
    """Split an S3 style URL into ``(bucket, path)``, the path without a leading slash."""
    if any(ord(char) < 0x20 or ord(char) == 0x7F for char in s):
        raise ValueError(f"parse {s!r}: invalid control character in URL")
    rest = s.split("#", 1)[0]
    scheme, rest = _split_scheme(rest)
    rest = rest.split("?", 1)[0]

    if not rest.startswith("/"):
        if scheme:
            return "", ""
        segment = rest.split("/", 1)[0]
        if ":" in segment:
            raise ValueError(f"parse {s!r}: first path segment in URL cannot contain colon")

    host = ""
    if rest.startswith("//") and (scheme or not rest.startswith("///")):
        authority, sep, path = rest[2:].partition("/")
        rest = sep + path
        host = authority.rpartition("@")[2]

    return host, rest.removeprefix("/")