"""
Version parsing and range checks for the restricted grammar used in manifests.

Only exact, caret, tilde and ``>=`` ranges are evaluated. Anything else, and in
particular ``||`` unions and ``a - b`` hyphen ranges, is reported as not
satisfied rather than approximated.
"""

from __future__ import annotations

import re
from functools import cmp_to_key
from typing import List, NamedTuple, Optional, Sequence

NON_SEMVER_PATTERNS = (
    re.compile(r"^git\+"),
    re.compile(r"^github:"),
    re.compile(r"^gitlab:"),
    re.compile(r"^bitbucket:"),
    re.compile(r"^file:"),
    re.compile(r"^link:"),
    re.compile(r"^npm:"),
    re.compile(r"^https?://"),
    re.compile(r"^workspace:"),
)

_WILDCARD = re.compile(r"^(\*|x|\d+\.x|\d+\.\d+\.x)$")
_LEADING_OPERATOR = re.compile(r"^[\^~=><]+")
_VERSION = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z.+-]+))?")


class Version(NamedTuple):
    major: int
    minor: int
    patch: int
    prerelease: Optional[str] = None

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        return f"{core}-{self.prerelease}" if self.prerelease else core


def is_non_semver(spec: str) -> bool:
    return any(pattern.search(spec) for pattern in NON_SEMVER_PATTERNS)


def is_wildcard(spec: str) -> bool:
    return bool(_WILDCARD.match(spec.strip()))


def is_complex_range(spec: str) -> bool:
    return "||" in spec or " - " in spec


def parse_version(spec: str) -> Optional[Version]:
    """Parse the first ``major.minor.patch`` in ``spec``.

    Returns ``None`` when the input cannot be verified (git/file/url specifiers,
    wildcards, malformed text). Never raises.
    """
    if not isinstance(spec, str):
        return None
    text = spec.strip()
    if not text or is_non_semver(text) or is_wildcard(text):
        return None
    text = _LEADING_OPERATOR.sub("", text).strip()
    if not text:
        return None
    first = text.split()[0]
    match = _VERSION.match(first)
    if not match:
        return None
    return Version(
        major=int(match.group(1)),
        minor=int(match.group(2)),
        patch=int(match.group(3)),
        prerelease=match.group(4),
    )


def normalize_version(spec: str) -> Optional[str]:
    parsed = parse_version(spec)
    if parsed is None:
        return None
    return f"{parsed.major}.{parsed.minor}.{parsed.patch}"


def satisfies(version: str, spec: str) -> bool:
    """Return True when ``version`` is inside the range ``spec``."""
    if not isinstance(spec, str):
        return False
    range_text = spec.strip()
    if is_complex_range(range_text):
        return False

    current = parse_version(version)
    if current is None:
        return False
    wanted = parse_version(range_text)
    if wanted is None:
        return False

    if range_text[0].isdigit() or range_text.startswith("v") or _is_exact_operator(range_text):
        return current[:3] == wanted[:3]

    if range_text.startswith("^"):
        if wanted.major > 0:
            return current.major == wanted.major and (current.minor, current.patch) >= (
                wanted.minor,
                wanted.patch,
            )
        return (
            current.major == 0
            and current.minor == wanted.minor
            and current.patch >= wanted.patch
        )

    if range_text.startswith("~"):
        return (
            current.major == wanted.major
            and current.minor == wanted.minor
            and current.patch >= wanted.patch
        )

    if range_text.startswith(">="):
        return current[:3] >= wanted[:3]

    return False


def _is_exact_operator(range_text: str) -> bool:
    return range_text.startswith("=") and not range_text.startswith("==")


def compare_versions(a: str, b: str) -> int:
    """Order two version specs; unparseable ones sort below parseable ones."""
    parsed_a = parse_version(a)
    parsed_b = parse_version(b)
    if parsed_a is None and parsed_b is None:
        return (a > b) - (a < b)
    if parsed_a is None:
        return -1
    if parsed_b is None:
        return 1
    if parsed_a[:3] != parsed_b[:3]:
        return -1 if parsed_a[:3] < parsed_b[:3] else 1
    if parsed_a.prerelease == parsed_b.prerelease:
        return 0
    # A release outranks any prerelease of the same core version.
    if parsed_a.prerelease is None:
        return 1
    if parsed_b.prerelease is None:
        return -1
    return -1 if parsed_a.prerelease < parsed_b.prerelease else 1


def sort_versions(versions: Sequence[str], *, descending: bool = False) -> List[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=descending)


def highest_version(versions: Sequence[str]) -> Optional[str]:
    if not versions:
        return None
    return sort_versions(versions, descending=True)[0]


def lowest_version(versions: Sequence[str]) -> Optional[str]:
    if not versions:
        return None
    return sort_versions(versions)[0]
