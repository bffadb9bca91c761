"""Tests for password hashing and the password policy report."""

import pytest

from fitos_auth.service.passwords import PASSWORD_ALGO, PasswordVerifier


@pytest.fixture
def verifier():
    return PasswordVerifier(min_length=8, max_length=128)


class TestPasswordHashing:
    def test_hash_is_salted_argon2id(self, verifier):
        hash1, algo = verifier.hash_password("TestPassword123!")
        hash2, _ = verifier.hash_password("TestPassword123!")

        assert algo == PASSWORD_ALGO == "argon2id"
        assert hash1.startswith("$argon2id$")
        assert hash1 != hash2
        assert "TestPassword123!" not in hash1

    def test_compare_password_accepts_match(self, verifier):
        pwd_hash, _ = verifier.hash_password("TestPassword123!")
        assert verifier.compare_password("TestPassword123!", pwd_hash)

    def test_compare_password_rejects_mismatch(self, verifier):
        pwd_hash, _ = verifier.hash_password("TestPassword123!")
        assert not verifier.compare_password("WrongPassword123!", pwd_hash)

    def test_compare_password_without_hash_is_false(self, verifier):
        """OAuth-only accounts have no stored hash."""
        assert not verifier.compare_password("TestPassword123!", None)
        assert not verifier.compare_password("TestPassword123!", "")

    def test_compare_password_with_garbage_hash_is_false(self, verifier):
        assert not verifier.compare_password("TestPassword123!", "not-a-real-hash")


class TestPasswordPolicy:
    def test_strong_password_passes_every_rule(self, verifier):
        report = verifier.validate_password("Str0ng!Passw0rd")

        assert report.is_valid
        assert report.score == 100
        assert all(report.requirements.values())
        assert report.reasons == []

    @pytest.mark.parametrize(
        "password,failed_rule",
        [
            ("Sh0rt!", "minLength"),
            ("lowercase123!", "hasUppercase"),
            ("UPPERCASE123!", "hasLowercase"),
            ("NoDigitsHere!", "hasNumbers"),
            ("NoSpecial1234", "hasSpecialChars"),
        ],
    )
    def test_each_rule_is_reported(self, verifier, password, failed_rule):
        report = verifier.validate_password(password)

        assert not report.is_valid
        assert report.requirements[failed_rule] is False
        assert report.score == 80
        assert len(report.reasons) == 1

    def test_too_long_password_is_rejected(self):
        verifier = PasswordVerifier(min_length=8, max_length=16)
        report = verifier.validate_password("Aa1!" * 5)

        assert not report.is_valid
        assert report.score == 100
        assert "must not exceed 16" in report.reasons[0]

    def test_empty_password_scores_zero(self, verifier):
        report = verifier.validate_password("")
        assert report.score == 0
        assert len(report.reasons) == 5

    def test_as_details_is_plain_data(self, verifier):
        details = verifier.validate_password("weak").as_details()
        assert set(details) == {"score", "requirements", "reasons"}
        assert details["requirements"]["hasLowercase"] is True
