import pytest

from rmm_cli.core.versioning import (
    best_match,
    coerce_tag,
    is_latest,
    matching_versions,
    normalize_version,
    parse_constraint,
)

TAGS = ["1.1.9", "1.2.0", "1.3.0", "2.0.0"]


def test_caret_range_picks_highest_compatible() -> None:
    assert best_match(TAGS, "^1.2.0") == "1.3.0"


def test_latest_and_missing_constraint_pick_highest() -> None:
    assert best_match(TAGS, None) == "2.0.0"
    assert best_match(TAGS, "latest") == "2.0.0"
    assert best_match(TAGS, "*") == "2.0.0"


def test_v_prefixed_tags_are_coerced_and_returned_verbatim() -> None:
    assert best_match(["v1.0.0", "v1.4.2", "nightly"], "~1.4") == "v1.4.2"


def test_no_match_returns_none() -> None:
    assert best_match(TAGS, ">=3.0.0") is None


def test_prereleases_excluded_by_default() -> None:
    tags = ["1.2.0", "1.3.0-beta.1"]
    assert best_match(tags, "^1.2.0") == "1.2.0"
    assert best_match(tags, "^1.2.0", allow_prerelease=True) == "1.3.0-beta.1"


def test_prerelease_below_the_lower_bound_is_rejected() -> None:
    assert best_match(["1.2.0-beta.1"], "^1.2.0", allow_prerelease=True) is None
    assert best_match(["1.2.0-beta.1", "1.2.5-rc.1"], "~1.2", allow_prerelease=True) == "1.2.5-rc.1"
    assert best_match(["2.0.0-rc.1"], "^1.0.0", allow_prerelease=True) is None


def test_host_flagged_prereleases_excluded() -> None:
    assert best_match(["1.0.0", "1.1.0"], None, prerelease_tags=["1.1.0"]) == "1.0.0"


def test_matching_versions_sorted_highest_first_without_duplicates() -> None:
    matches = matching_versions(["1.0.0", "v1.0.0", "1.2.0"], ">=1.0.0")
    assert [tag for _, tag in matches] == ["1.2.0", "1.0.0"]


def test_invalid_constraint_raises_value_error() -> None:
    with pytest.raises(ValueError, match="Invalid version constraint"):
        parse_constraint(">>>1")


def test_helpers() -> None:
    assert is_latest(None) and is_latest(" Latest ")
    assert not is_latest("^1.0.0")
    assert str(coerce_tag("v1.2")) == "1.2.0"
    assert coerce_tag("main") is None
    assert normalize_version("v1.3") == "1.3.0"
    assert normalize_version("abc") == "abc"
