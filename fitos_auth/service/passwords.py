from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fitos_auth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


@dataclass
class PasswordValidationResult:
    is_valid: bool
    score: int
    requirements: Dict[str, bool] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    def as_details(self) -> dict:
        return {
            "score": self.score,
            "requirements": dict(self.requirements),
            "reasons": list(self.reasons),
        }


class PasswordVerifier:
    """Hashes, checks and grades passwords."""

    def __init__(self, *, min_length: int = 8, max_length: int = 128) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def compare_password(self, password: str, stored_hash: str | None) -> bool:
        """Return True only when ``password`` matches ``stored_hash``.

        Mismatches, unknown hash formats and OAuth-only accounts without a
        hash all come back as False; nothing is raised.
        """
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def validate_password(self, password: str) -> PasswordValidationResult:
        password = password or ""
        requirements = {
            "minLength": len(password) >= self.min_length,
            "hasUppercase": bool(re.search(r"[A-Z]", password)),
            "hasLowercase": bool(re.search(r"[a-z]", password)),
            "hasNumbers": bool(re.search(r"\d", password)),
            "hasSpecialChars": bool(_SPECIAL_RE.search(password)),
        }
        reasons = []
        if not requirements["minLength"]:
            reasons.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if not requirements["hasUppercase"]:
            reasons.append("Password must contain at least one uppercase letter")
        if not requirements["hasLowercase"]:
            reasons.append("Password must contain at least one lowercase letter")
        if not requirements["hasNumbers"]:
            reasons.append("Password must contain at least one number")
        if not requirements["hasSpecialChars"]:
            reasons.append("Password must contain at least one special character")
        if len(password) > self.max_length:
            reasons.append(f"Password must not exceed {self.max_length} characters")

        score = 20 * sum(1 for ok in requirements.values() if ok)
        return PasswordValidationResult(
            is_valid=not reasons,
            score=score,
            requirements=requirements,
            reasons=reasons,
        )
