"""Version ordering and alias resolution."""

from __future__ import annotations

import re
from typing import Mapping

_SEGMENT = re.compile(r"^(\d+)(.*)$")


def parse_segment(segment: str) -> tuple[int, str] | None:
    """Split a version segment into numeric prefix and suffix.

    ``"7"`` -> ``(7, "")``, ``"0-rc1"`` -> ``(0, "-rc1")``, ``"abc"`` -> None.
    """
    match = _SEGMENT.match(segment)
    if match is None:
        return None
    return int(match.group(1)), match.group(2)


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def compare_versions(a: str, b: str) -> int:
    """Compare two dotted version strings.

    Segments are compared left to right by numeric prefix. A missing
    trailing segment counts as ``"0"``. On an equal prefix a release
    (no suffix) sorts after a prerelease (``-rc1``). A segment without a
    numeric prefix makes the whole comparison fall back to plain string
    ordering.

    Args:
        a: First version.
        b: Second version.

    Returns:
        -1, 0 or 1.
    """
    parts_a = a.split(".")
    parts_b = b.split(".")
    for i in range(max(len(parts_a), len(parts_b))):
        seg_a = parse_segment(parts_a[i] if i < len(parts_a) else "0")
        seg_b = parse_segment(parts_b[i] if i < len(parts_b) else "0")
        if seg_a is None or seg_b is None:
            return (a > b) - (a < b)
        num_a, suffix_a = seg_a
        num_b, suffix_b = seg_b
        if num_a != num_b:
            return _sign(num_a - num_b)
        if suffix_a != suffix_b:
            if suffix_a == "":
                return 1
            if suffix_b == "":
                return -1
            return (suffix_a > suffix_b) - (suffix_a < suffix_b)
    return 0


def major_of(version: str) -> str:
    return version.split(".", 1)[0]


def is_compatible(reported: str, expected: str) -> bool:
    """Check whether a binary's reported version satisfies the expected one.

    Accepted when equal, or when both share a major version and the
    reported version is not older.
    """
    if reported == expected:
        return True
    if major_of(reported) != major_of(expected):
        return False
    return compare_versions(reported, expected) >= 0


def resolve_alias(
    alias: str,
    version_map: Mapping[str, str],
    pad_minor: bool = False,
) -> tuple[str, bool]:
    """Resolve a short alias against a pinned version table.

    Args:
        alias: Requested version ("17", "8.0", "17.7.0").
        version_map: Alias to pinned version table.
        pad_minor: Pad an unknown ``X.Y`` alias to ``X.Y.0``.

    Returns:
        Tuple of (version, resolved). ``resolved`` is False when the
        alias was passed through unchanged.
    """
    alias = alias.strip()
    if alias in version_map:
        return version_map[alias], True
    if alias in version_map.values():
        return alias, True
    if pad_minor and re.fullmatch(r"\d+\.\d+", alias):
        return f"{alias}.0", True
    return alias, False


def newest(versions: list[str]) -> str | None:
    """Return the newest version in a list, or None if empty."""
    best: str | None = None
    for version in versions:
        if best is None or compare_versions(version, best) > 0:
            best = version
    return best
