import pytest

from tasktrack.service.validation import (
    normalize_email,
    validate_name,
    validate_password,
    validate_username,
)


class TestEmail:
    def test_lowercases_and_strips(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    def test_strips_zero_width_characters(self):
        assert normalize_email("al\u200bice@example.com") == "alice@example.com"

    @pytest.mark.parametrize(
        "value", ["", "no-at-sign", "@example.com", "alice@", "alice@localhost", "a b@example.com"]
    )
    def test_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            normalize_email(value)


class TestUsername:
    @pytest.mark.parametrize("value", ["abc", "a_b_c", "x" * 50])
    def test_accepts(self, value):
        assert validate_username(value) == value

    @pytest.mark.parametrize("value", ["ab", "x" * 51, "has-dash", "has space", "dot.name"])
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            validate_username(value)


def test_names_are_optional_and_bounded():
    assert validate_name(None) is None
    assert validate_name("   ") is None
    assert validate_name(" Ada ") == "Ada"
    with pytest.raises(ValueError, match="first name"):
        validate_name("x" * 51, "first name")


def test_password_length_bounds():
    assert validate_password("x" * 8) == "x" * 8
    with pytest.raises(ValueError):
        validate_password("x" * 7)
    with pytest.raises(ValueError):
        validate_password("x" * 129)
