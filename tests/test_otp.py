"""Tests for one-time passcode generation and verification."""

from collections import Counter

import pytest

from authflow.service import otp
from authflow.service.otp import OtpEngine


class TestGenerate:
    def test_codes_have_requested_length(self):
        for length in (4, 6, 8):
            code = otp.generate(length)
            assert len(code) == length
            assert code.isdigit()

    def test_no_leading_zero(self):
        assert all(otp.generate(6)[0] != "0" for _ in range(500))

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            otp.generate(0)

    def test_leading_digit_is_uniform(self):
        samples = 10_000
        codes = [otp.generate(6) for _ in range(samples)]
        assert all(100_000 <= int(code) <= 999_999 for code in codes)
        counts = Counter(code[0] for code in codes)
        expected = samples / 9
        chi_square = sum(
            (counts.get(str(d), 0) - expected) ** 2 / expected for d in range(1, 10)
        )
        # 8 degrees of freedom; p=0.0001 cutoff is ~31.8
        assert chi_square < 40


class TestVerify:
    def test_hash_is_deterministic_per_secret(self):
        assert otp.hash_code("123456", "s1") == otp.hash_code("123456", "s1")
        assert otp.hash_code("123456", "s1") != otp.hash_code("123456", "s2")

    def test_hash_is_not_the_code(self):
        assert "123456" not in otp.hash_code("123456", "secret")

    def test_verify_matches(self):
        stored = otp.hash_code("482913", "secret")
        assert otp.verify("482913", stored, "secret") is True
        assert otp.verify("482914", stored, "secret") is False

    @pytest.mark.parametrize("code", [None, "", 123456, ["1"], "１２３４５６"])
    def test_malformed_input_is_a_failed_match(self, code):
        stored = otp.hash_code("123456", "secret")
        assert otp.verify(code, stored, "secret") is False

    def test_missing_hash_is_a_failed_match(self):
        assert otp.verify("123456", None, "secret") is False
        assert otp.verify("123456", "", "secret") is False


class TestOtpEngine:
    def test_round_trip(self):
        engine = OtpEngine("secret", length=8)
        code = engine.generate()
        assert len(code) == 8
        assert engine.verify(code, engine.hash(code))

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            OtpEngine("")
