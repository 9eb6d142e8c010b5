from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    HashingError,
    InvalidHash,
    VerificationError,
    VerifyMismatchError,
)
from zxcvbn import zxcvbn

from gatehouse.logging import get_logger
from gatehouse.service.errors import ServerError

logger = get_logger(__name__)

# zxcvbn refuses very long inputs; the tail adds nothing to the estimate
_MAX_SCORED_LENGTH = 72


@dataclass
class StrengthResult:
    is_valid: bool
    score: int
    feedback: List[str] = field(default_factory=list)


class PasswordService:
    """Argon2id hashing plus a dictionary-aware strength estimate."""

    def __init__(self, *, min_length: int = 8, min_score: int = 3) -> None:
        self.min_length = min_length
        self.min_score = min_score
        self._hasher = PasswordHasher(type=Type.ID)
        # verified against when an email is unknown so both login failures cost one hash
        self._dummy_hash = self._hasher.hash("gatehouse-timing-equalizer")

    def hash(self, secret: str) -> str:
        try:
            return self._hasher.hash(secret)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("Could not process password") from exc

    def verify(self, secret: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_dummy(self, secret: str) -> bool:
        self.verify(secret, self._dummy_hash)
        return False

    def score_strength(
        self, secret: str, user_inputs: Iterable[str] = ()
    ) -> StrengthResult:
        """Score a candidate password from 0 to 4.

        Valid means at least ``min_length`` characters and a score of at least
        ``min_score``. Never raises; an estimator failure counts as score 0.
        """
        secret = secret or ""
        feedback: List[str] = []
        if len(secret) < self.min_length:
            feedback.append(f"Use at least {self.min_length} characters.")
        inputs = [value for value in user_inputs if value]
        try:
            result = zxcvbn(secret[:_MAX_SCORED_LENGTH], user_inputs=inputs)
            score = int(result.get("score", 0))
            hints = result.get("feedback") or {}
            warning = hints.get("warning")
            if warning and score < self.min_score:
                feedback.append(warning)
            feedback.extend(s for s in hints.get("suggestions") or [] if s)
        except Exception as exc:
            logger.warning("password_strength_failed", error=str(exc))
            score = 0
        if score < self.min_score and not feedback:
            feedback.append("Add another word or two. Uncommon words are better.")
        is_valid = len(secret) >= self.min_length and score >= self.min_score
        return StrengthResult(is_valid=is_valid, score=score, feedback=feedback)


__all__ = ["PasswordService", "StrengthResult"]
