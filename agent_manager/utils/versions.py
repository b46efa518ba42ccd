"""Version string helpers."""

import re


def parse_version(raw: str) -> str | None:
    """Extract a semver-ish version from a string like 'opencode v1.0.140'."""
    m = re.search(r"v?(\d+\.\d+\.\d+)", raw)
    return m.group(1) if m else None


def _segments(version: str) -> list[int]:
    segments = []
    for part in version.strip().removeprefix("v").split("."):
        digits = re.match(r"\d+", part)
        segments.append(int(digits.group()) if digits else 0)
    return segments


def compare_versions(v1: str, v2: str) -> int:
    """Segment-wise numeric comparison; missing trailing segments count as 0.

    Returns -1, 0 or 1 like a classic ``cmp``.
    """
    a, b = _segments(v1), _segments(v2)
    for i in range(max(len(a), len(b))):
        p1 = a[i] if i < len(a) else 0
        p2 = b[i] if i < len(b) else 0
        if p1 > p2:
            return 1
        if p1 < p2:
            return -1
    return 0
