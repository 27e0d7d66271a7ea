import pytest

from stackpilot.UTILS.version_compare import compare_versions, is_newer, parse_version


@pytest.mark.parametrize("left,right,expected", [
    ("1.0.0", "1.0.0", 0),
    ("1.0", "1.0.0", 0),
    ("1.2.0", "1.10.0", -1),
    ("2.0.0", "1.9.9", 1),
    ("v2.0", "2.0.0", 0),
    ("2.0.0-rc.1", "2.0.0", -1),
    ("2.0.0-rc.2", "2.0.0-rc.10", -1),
    ("2.0.0-alpha", "2.0.0-beta", -1),
])
def test_compare_versions(left, right, expected):
    assert compare_versions(left, right) == expected


def test_unparseable_versions_compare_as_strings():
    assert parse_version("latest") is None
    assert compare_versions("beta", "alpha") == 1


def test_none_sorts_first():
    assert compare_versions(None, "1.0") == -1
    assert compare_versions("1.0", None) == 1


def test_is_newer_is_strict():
    assert is_newer("1.1.0", "1.0.0")
    assert not is_newer("1.0.0", "1.0.0")
    assert not is_newer("0.9.0", "1.0.0")
