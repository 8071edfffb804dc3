"""Unit tests for the memory key codec."""

from __future__ import annotations

import pytest

from memgarden.models import decode_key
from memgarden.models import encode_key
from memgarden.models.keys import KEY_ALPHABET


class TestEncodeKey:
    def test_zero_is_first_digit(self):
        assert encode_key(0) == "A"

    def test_single_digit_ids(self):
        assert encode_key(1) == "B"
        assert encode_key(26) == "a"
        assert encode_key(63) == "/"

    def test_rolls_over_to_two_digits(self):
        assert encode_key(64) == "BA"
        assert encode_key(64 * 64 - 1) == "//"

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            encode_key(-1)

    def test_keys_are_distinct(self):
        keys = {encode_key(n) for n in range(5000)}
        assert len(keys) == 5000

    def test_only_alphabet_characters(self):
        assert set(encode_key(123456789)) <= set(KEY_ALPHABET)


class TestDecodeKey:
    @pytest.mark.parametrize("n", [0, 1, 63, 64, 4095, 4096, 987654321])
    def test_inverse_of_encode(self, n):
        assert decode_key(encode_key(n)) == n

    def test_rejects_foreign_characters(self):
        with pytest.raises(ValueError, match="invalid key character"):
            decode_key("AB-C")

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            decode_key("")
