"""Identity verification, sessions, emergency grants and access policy."""

from .biometrics import BiometricMatcher, DigestMatcher, MatchResult
from .challenges import ChallengeStore, IssuedChallenge
from .policy import AccessDecision, AccessPolicy, Actor, decide
from .session_manager import IssuedGrant, IssuedSession, SessionManager, TokenStatus
from .tokens import GrantPrincipal, Principal, SessionPrincipal, TokenKind, TokenSigner
from .verifier import (
    AuthMethod,
    BiometricMethod,
    CredentialVerifier,
    OtpMethod,
    ProofSubject,
    VerificationResult,
    default_methods,
)

__all__ = [
    "AccessDecision",
    "AccessPolicy",
    "Actor",
    "AuthMethod",
    "BiometricMatcher",
    "BiometricMethod",
    "ChallengeStore",
    "CredentialVerifier",
    "DigestMatcher",
    "GrantPrincipal",
    "IssuedChallenge",
    "IssuedGrant",
    "IssuedSession",
    "MatchResult",
    "OtpMethod",
    "Principal",
    "ProofSubject",
    "SessionManager",
    "SessionPrincipal",
    "TokenKind",
    "TokenSigner",
    "TokenStatus",
    "VerificationResult",
    "decide",
    "default_methods",
]
