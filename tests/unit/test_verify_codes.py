"""Unit tests for verification code generation."""

from rb_common.auth.verify_codes import _CHARSET, _CODE_LENGTH, generate_code


def test_code_length():
    assert len(generate_code()) == _CODE_LENGTH == 8


def test_code_uses_unambiguous_alphabet():
    for _ in range(200):
        code = generate_code()
        assert set(code) <= set(_CHARSET)
        assert not set(code) & set("01IO")


def test_codes_differ():
    assert len({generate_code() for _ in range(50)}) == 50
