"""
Ordering of product version strings such as '1.2.0', 'v2.0' or '2.0.0-rc.1'.
"""
import re
from typing import Optional, Tuple

VERSION_PATTERN = re.compile(
    r'^[vV]?(?P<release>\d+(?:\.\d+)*)(?:[-.]?(?P<pre>[0-9A-Za-z][0-9A-Za-z.-]*))?(?:\+[0-9A-Za-z.-]+)?$'
)


def parse_version(version: str) -> Optional[Tuple]:
    """
    Parses a version into a sortable key.

    :param version: The version string.
    :return: A comparable tuple, or None if the string is not a dotted version.
    """
    if not version:
        return None
    match = VERSION_PATTERN.match(version.strip())
    if not match:
        return None

    release = [int(part) for part in match.group('release').split('.')]
    # 1.2 == 1.2.0
    while len(release) > 1 and release[-1] == 0:
        release.pop()

    pre = match.group('pre')
    if pre is None:
        # A final release sorts after any of its pre-releases
        return (tuple(release), 1, ())

    pre_parts = []
    for part in re.split(r'[.-]', pre):
        if part.isdigit():
            pre_parts.append((0, int(part), ''))
        else:
            pre_parts.append((1, 0, part.lower()))
    return (tuple(release), 0, tuple(pre_parts))


def compare_versions(left: Optional[str], right: Optional[str]) -> int:
    """
    Compares two versions.

    :return: -1 if left < right, 0 if equal, 1 if left > right.
             Unparseable versions fall back to string comparison.
    """
    if left == right:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1

    left_key = parse_version(left)
    right_key = parse_version(right)
    if left_key is None or right_key is None:
        left_key, right_key = left, right  # type: ignore[assignment]

    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def is_newer(candidate: Optional[str], current: Optional[str]) -> bool:
    """
    True if candidate is strictly newer than current.
    """
    return compare_versions(candidate, current) > 0
