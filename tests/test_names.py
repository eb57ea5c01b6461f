import pytest

from enrd.names import normalize_name


def test_surrounding_whitespace_is_stripped() -> None:
    assert normalize_name("  Cafe 1 \t") == "Cafe 1"


@pytest.mark.parametrize(
    "value",
    [None, 42, "", "   ", "Cafe\n1", "Cafe\r1", "Cafe\x001", "bad\ud800"],
)
def test_unusable_names_are_refused(value) -> None:
    assert normalize_name(value) is None


def test_length_limit_applies_after_stripping() -> None:
    assert normalize_name(" abcd ", max_chars=4) == "abcd"
    assert normalize_name("abcde", max_chars=4) is None
    assert normalize_name("a" * 500, max_chars=0) == "a" * 500
