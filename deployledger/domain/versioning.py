"""
Semantic version arithmetic for deployment records.

All functions are pure: versions are compared and incremented as integer
triples, never as strings, so "0.9.0" < "0.10.0" holds.
"""
import re
from functools import cmp_to_key
from typing import Iterable, Optional, Tuple, Union

from deployledger.domain.exceptions import (
    InvalidVersionComponentsException,
    InvalidVersionFormatException,
)
from deployledger.domain.models import IncrementKind, VersionStats

BASELINE_VERSION = "0.1.0"
VERSION_PATTERN = re.compile(r"([0-9]+)\.([0-9]+)\.([0-9]+)")

VersionTuple = Tuple[int, int, int]


def parse_version(version: str) -> VersionTuple:
    """
    Parses "MAJOR.MINOR.PATCH" into an integer triple.

    Raises:
        InvalidVersionFormatException: If the value is not exactly three
            non-negative integers separated by dots.
    """
    if not isinstance(version, str):
        raise InvalidVersionFormatException(f"Version must be a string, got {type(version).__name__}.")

    match = VERSION_PATTERN.fullmatch(version)
    if not match:
        raise InvalidVersionFormatException(
            f"Invalid version format: {version!r}. Expected format: MAJOR.MINOR.PATCH"
        )
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def render_version(major: int, minor: int, patch: int) -> str:
    """Renders components canonically, without leading zeros."""
    for component in (major, minor, patch):
        # bool is an int subclass but never a meaningful version component
        if isinstance(component, bool) or not isinstance(component, int):
            raise InvalidVersionComponentsException("Version components must be integers.")
        if component < 0:
            raise InvalidVersionComponentsException("Version components cannot be negative.")
    return f"{major}.{minor}.{patch}"


def is_valid_version(version: str) -> bool:
    try:
        parse_version(version)
    except InvalidVersionFormatException:
        return False
    return True


def compare_versions(a: str, b: str) -> int:
    """Returns -1, 0 or 1 as a is lower than, equal to or greater than b."""
    left, right = parse_version(a), parse_version(b)
    if left == right:
        return 0
    return 1 if left > right else -1


version_sort_key = cmp_to_key(compare_versions)


def next_version(
    current: Optional[str] = None,
    kind: Union[IncrementKind, str] = IncrementKind.PATCH,
) -> str:
    """
    Computes the version that follows `current`.

    The first deployment of a repository (current is None) always gets the
    baseline version. Minor bumps reset patch; major bumps reset minor and patch.
    """
    kind = IncrementKind(kind)

    if current is None:
        return BASELINE_VERSION

    major, minor, patch = parse_version(current)

    if kind is IncrementKind.MAJOR:
        return render_version(major + 1, 0, 0)
    if kind is IncrementKind.MINOR:
        return render_version(major, minor + 1, 0)
    return render_version(major, minor, patch + 1)


def version_stats(versions: Iterable[str]) -> VersionStats:
    """Summarizes a set of versions, silently skipping unparseable entries."""
    valid = [v for v in versions if is_valid_version(v)]
    if not valid:
        return VersionStats()

    ordered = sorted(valid, key=version_sort_key)
    parsed = [parse_version(v) for v in ordered]

    return VersionStats(
        total=len(ordered),
        latest=ordered[-1],
        oldest=ordered[0],
        distinct_major=len({major for major, _, _ in parsed}),
        distinct_minor_combinations=len({(major, minor) for major, minor, _ in parsed}),
    )
