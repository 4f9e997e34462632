from rmm_cli.errors import IntegrityMismatch, NotFound, RmmError


def test_annotate_keeps_first_values() -> None:
    error = NotFound("gone", stage="resolve")
    error.annotate(dependency="widget", stage="fetch")
    error.annotate(dependency="other")

    assert error.dependency == "widget"
    assert error.stage == "resolve"
    assert str(error) == "[widget @ resolve] gone"


def test_hint_is_rendered_on_its_own_line() -> None:
    error = RmmError("boom", hint="try again", stage="lock")
    assert str(error) == "[lock] boom\nHint: try again"


def test_to_dict() -> None:
    error = IntegrityMismatch("bad digest", expected="aa", actual="bb", dependency="widget")
    payload = error.to_dict()

    assert payload["code"] == "E_INTEGRITY"
    assert payload["stage"] == "fetch"
    assert payload["dependency"] == "widget"
    assert payload["context"] == {"expected": "aa", "actual": "bb"}
    assert "hint" in payload
