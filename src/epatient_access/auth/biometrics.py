"""Pluggable biometric comparison."""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..errors import ValidationError
from ..secrets import MaskedSecret

DIGEST_HANDLE_PREFIX = "hmac-sha256:"


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    confidence: float

    def passes(self, threshold: float) -> bool:
        return self.matched and self.confidence >= threshold


def _sample_bytes(sample: bytes | str) -> bytes:
    if isinstance(sample, str):
        try:
            sample = sample.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ValidationError("Biometric sample is malformed") from e
    if not sample:
        raise ValidationError("Biometric sample is empty")
    return sample


class BiometricMatcher(ABC):
    """Turns samples into stored reference handles and compares against them.

    Implementations wrap a real matching engine. The reference handle is
    opaque to the rest of the system.
    """

    @abstractmethod
    def enroll(self, sample: bytes | str) -> str:
        """Derive the reference handle to store for ``sample``."""

    @abstractmethod
    def compare(self, handle: str, sample: bytes | str) -> MatchResult:
        """Compare a presented sample with a stored reference handle."""


class DigestMatcher(BiometricMatcher):
    """Exact-template matcher over a keyed digest.

    Suitable for devices that emit a stable template per enrolled finger or
    iris. The stored handle is an HMAC of the template, so a leaked handle
    cannot be replayed as a sample.
    """

    def __init__(self, key: MaskedSecret | bytes | str):
        if isinstance(key, MaskedSecret):
            key = key.get_value()
        if isinstance(key, str):
            key = key.encode("utf-8")
        if not key:
            raise ValueError("DigestMatcher requires a non-empty key")
        self._key = key

    def _digest(self, sample: bytes | str) -> str:
        return hmac.new(self._key, _sample_bytes(sample), hashlib.sha256).hexdigest()

    def enroll(self, sample: bytes | str) -> str:
        return f"{DIGEST_HANDLE_PREFIX}{self._digest(sample)}"

    def compare(self, handle: str, sample: bytes | str) -> MatchResult:
        if not handle.startswith(DIGEST_HANDLE_PREFIX):
            return MatchResult(matched=False, confidence=0.0)
        expected = handle[len(DIGEST_HANDLE_PREFIX) :]
        matched = hmac.compare_digest(expected, self._digest(sample))
        return MatchResult(matched=matched, confidence=1.0 if matched else 0.0)
