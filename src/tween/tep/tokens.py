"""
TEP Token Signing and Verification

A TEP token is an RS256/RS384/RS512 signed JWT that carries a user's delegated identity, the scopes
a mini-app was granted, and the context the mini-app was launched in. Tokens are self-contained:
any replica holding the public key can verify them without a lookup.

Key Components:
- KeyStore: the process-wide RSA signing key plus every key accepted for verification, selected by
  ``kid`` so keys can be rotated
- TepClaims: the typed claim set, including the default policies for optional claims
- TokenCodec: builds, signs, and verifies claim sets
- TokenError: verification failures, one kind per failed check
"""

import base64
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from jwcrypto import jwk, jws, jwt
from jwcrypto.common import JWException
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ("RS256", "RS384", "RS512")
TOKEN_TYPE = "tep_access_token"
DEFAULT_TOKEN_LIFETIME = 86400
DEFAULT_PRIVATE_KEY_FILE = "/run/secrets/tmcp_private_key"


class KeyStoreError(Exception):
    """Raised at startup when no usable signing key can be loaded."""

    @staticmethod
    def key_not_configured(path: Optional[str]) -> "KeyStoreError":
        return KeyStoreError(
            f"error-key-store-1000 No signing key configured and ephemeral keys are disabled (checked {path})"
        )

    @staticmethod
    def key_unreadable(reason: str) -> "KeyStoreError":
        return KeyStoreError(f"error-key-store-1001 Signing key could not be loaded: {reason}")

    @staticmethod
    def key_not_rsa(kty: Optional[str]) -> "KeyStoreError":
        return KeyStoreError(f"error-key-store-1002 Signing key must be an RSA private key, got {kty}")

    @staticmethod
    def algorithm_not_allowed(algorithm: str) -> "KeyStoreError":
        return KeyStoreError(f"error-key-store-1003 Signing algorithm {algorithm} is not allowed")


class KeyStore:
    """
    Holds the signing key and the set of keys accepted for verification.

    A KeyStore is built once when the service starts and passed to every TokenCodec. Previous keys
    can be added with ``add_verification_key`` so tokens minted before a rotation still verify.
    """

    def __init__(self, signing_key: jwk.JWK, algorithm: str = "RS256") -> None:
        if algorithm not in ALLOWED_ALGORITHMS:
            raise KeyStoreError.algorithm_not_allowed(algorithm)
        if signing_key.get("kty") != "RSA":
            raise KeyStoreError.key_not_rsa(signing_key.get("kty"))
        if not signing_key.has_private:
            raise KeyStoreError.key_unreadable("not a private key")
        self.signing_key = signing_key
        self.algorithm = algorithm
        self.key_id: str = signing_key.get("kid")
        self.verification_keys = jwk.JWKSet()
        self.verification_keys.add(signing_key)

    def add_verification_key(self, key: jwk.JWK) -> None:
        self.verification_keys.add(key)

    def public_jwks(self) -> Dict[str, Any]:
        return json.loads(self.verification_keys.export(private_keys=False))

    @classmethod
    def from_pem(cls, pem: bytes, key_id: str, algorithm: str = "RS256") -> "KeyStore":
        try:
            loaded = jwk.JWK.from_pem(pem)
        except (ValueError, TypeError, JWException) as e:
            raise KeyStoreError.key_unreadable(type(e).__name__) from e
        key_data = json.loads(loaded.export_private())
        key_data.update({"kid": key_id, "alg": algorithm, "use": "sig"})
        return cls(jwk.JWK(**key_data), algorithm)

    @classmethod
    def ephemeral(cls, key_id: str, algorithm: str = "RS256") -> "KeyStore":
        key = jwk.JWK.generate(kty="RSA", size=2048, kid=key_id, alg=algorithm, use="sig")
        return cls(key, algorithm)

    @classmethod
    def load(
        cls,
        key_id: str,
        algorithm: str = "RS256",
        private_key: Optional[str] = None,
        private_key_file: Optional[str] = DEFAULT_PRIVATE_KEY_FILE,
        allow_ephemeral: bool = False,
    ) -> "KeyStore":
        """
        Load the signing key from the environment value, then the secret file.

        Generating a throwaway key is only permitted when ``allow_ephemeral`` is set, since tokens
        signed with it cannot be verified by other replicas or after a restart.
        """
        if private_key:
            logger.info("Loading signing key %s from environment", key_id)
            return cls.from_pem(private_key.encode(), key_id, algorithm)

        if private_key_file and os.path.exists(private_key_file):
            logger.info("Loading signing key %s from %s", key_id, private_key_file)
            with open(private_key_file, "rb") as fd:
                return cls.from_pem(fd.read(), key_id, algorithm)

        if allow_ephemeral:
            logger.warning(
                "No signing key configured, generating ephemeral key %s. Tokens will not survive a restart.",
                key_id,
            )
            return cls.ephemeral(key_id, algorithm)

        raise KeyStoreError.key_not_configured(private_key_file)


class TokenErrorKind(str, Enum):
    MALFORMED = "malformed"
    ALGORITHM_NOT_ALLOWED = "algorithm_not_allowed"
    UNKNOWN_KEY = "unknown_key"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_ISSUER = "invalid_issuer"
    MISSING_AUDIENCE = "missing_audience"
    INVALID_TOKEN_TYPE = "invalid_token_type"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"


class TokenError(Exception):
    """A TEP token failed verification. ``kind`` names the check that failed."""

    def __init__(self, kind: TokenErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @staticmethod
    def malformed(detail: str) -> "TokenError":
        return TokenError(TokenErrorKind.MALFORMED, f"error-token-1000 Token is malformed: {detail}")

    @staticmethod
    def algorithm_not_allowed(algorithm: str) -> "TokenError":
        return TokenError(
            TokenErrorKind.ALGORITHM_NOT_ALLOWED,
            f"error-token-1001 Token algorithm {algorithm} is not allowed",
        )

    @staticmethod
    def unknown_key(kid: Optional[str]) -> "TokenError":
        return TokenError(TokenErrorKind.UNKNOWN_KEY, f"error-token-1002 Token signed by unknown key {kid}")

    @staticmethod
    def invalid_signature() -> "TokenError":
        return TokenError(TokenErrorKind.INVALID_SIGNATURE, "error-token-1003 Token signature is invalid")

    @staticmethod
    def invalid_issuer(issuer: Any) -> "TokenError":
        return TokenError(TokenErrorKind.INVALID_ISSUER, f"error-token-1004 Token issuer {issuer} is not trusted")

    @staticmethod
    def missing_audience() -> "TokenError":
        return TokenError(TokenErrorKind.MISSING_AUDIENCE, "error-token-1005 Token has no audience")

    @staticmethod
    def invalid_token_type(token_type: Any) -> "TokenError":
        return TokenError(
            TokenErrorKind.INVALID_TOKEN_TYPE,
            f"error-token-1006 Token type {token_type} is not {TOKEN_TYPE}",
        )

    @staticmethod
    def expired() -> "TokenError":
        return TokenError(TokenErrorKind.EXPIRED, "error-token-1007 Token has expired")

    @staticmethod
    def not_yet_valid() -> "TokenError":
        return TokenError(TokenErrorKind.NOT_YET_VALID, "error-token-1008 Token is not yet valid")


class RoomPermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_send_messages: bool = True
    can_invite_users: bool = False
    can_edit_messages: bool = False
    can_delete_messages: bool = False
    can_add_reactions: bool = True


class AuthorizationContext(BaseModel):
    """The room a mini-app was launched in and what it may do there."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    roles: List[str] = Field(default_factory=lambda: ["member"])
    permissions: RoomPermissions = Field(default_factory=RoomPermissions)

    @classmethod
    def for_launch(
        cls, miniapp_context: Optional[Dict[str, Any]], roles: Optional[List[str]] = None
    ) -> Optional["AuthorizationContext"]:
        """Only launches that carry a ``room_id`` get an authorization context."""
        if not miniapp_context or not miniapp_context.get("room_id"):
            return None
        if roles:
            return cls(room_id=miniapp_context["room_id"], roles=roles)
        return cls(room_id=miniapp_context["room_id"])


class UserContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class ApprovalHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: str
    approved_at: datetime
    approval_method: str = "initial"


class SessionRef(BaseModel):
    """The upstream DAS session a token was delegated from."""

    model_config = ConfigDict(frozen=True)

    device_id: str = "unknown"
    session_id: str = "unknown"


class TepClaims(BaseModel):
    """
    The claim set of a TEP token.

    Instances are immutable. ``client_id`` and ``azp`` always equal the audience; ``scope`` is the
    space-joined scope list as it appears on the wire.
    """

    model_config = ConfigDict(frozen=True)

    iss: str
    sub: str
    aud: str
    iat: int
    nbf: int
    exp: int
    jti: str
    token_type: str = TOKEN_TYPE
    client_id: str
    azp: str
    scope: str = ""
    wallet_id: Optional[str] = None
    session_id: Optional[str] = None
    user_context: Optional[UserContext] = None
    miniapp_context: Optional[Dict[str, Any]] = None
    authorization_context: Optional[AuthorizationContext] = None
    approval_history: List[ApprovalHistoryEntry] = Field(default_factory=list)
    delegated_from: Optional[str] = None
    session_ref: Optional[SessionRef] = None

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class TokenCodec:
    """
    Mints and verifies TEP tokens with the keys held by a KeyStore.

    ``clock`` returns the current time as an aware datetime and exists so tests can mint tokens in
    the past or the future.
    """

    def __init__(
        self,
        key_store: KeyStore,
        issuer: str,
        lifetime: int = DEFAULT_TOKEN_LIFETIME,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.key_store = key_store
        self.issuer = issuer
        self.lifetime = lifetime
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> int:
        return int(self._clock().timestamp())

    def build_claims(
        self,
        subject: str,
        audience: str,
        scopes: Sequence[str],
        wallet_id: Optional[str] = None,
        session_id: Optional[str] = None,
        user_context: Optional[UserContext] = None,
        miniapp_context: Optional[Dict[str, Any]] = None,
        roles: Optional[List[str]] = None,
        approval_history: Sequence[ApprovalHistoryEntry] = (),
        delegated_from: Optional[str] = None,
        session_ref: Optional[SessionRef] = None,
    ) -> TepClaims:
        now = self._now()
        return TepClaims(
            iss=self.issuer,
            sub=subject,
            aud=audience,
            iat=now,
            nbf=now,
            exp=now + self.lifetime,
            jti=str(uuid.uuid4()),
            client_id=audience,
            azp=audience,
            scope=" ".join(scopes),
            wallet_id=wallet_id,
            session_id=session_id,
            user_context=user_context,
            miniapp_context=miniapp_context or None,
            authorization_context=AuthorizationContext.for_launch(miniapp_context, roles),
            approval_history=list(approval_history),
            delegated_from=delegated_from,
            session_ref=session_ref,
        )

    def sign(self, claims: TepClaims) -> str:
        token = jwt.JWT(
            header={
                "alg": self.key_store.algorithm,
                "kid": self.key_store.key_id,
                "typ": "JWT",
            },
            claims=claims.model_dump(mode="json", exclude_none=True),
        )
        token.make_signed_token(self.key_store.signing_key)
        return token.serialize()

    def encode(self, subject: str, audience: str, scopes: Sequence[str], **context: Any) -> str:
        """Build a claim set with ``build_claims`` and sign it."""
        return self.sign(self.build_claims(subject, audience, scopes, **context))

    def decode(self, token: str) -> TepClaims:
        header = _read_header(token)
        algorithm = header.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            raise TokenError.algorithm_not_allowed(str(algorithm))

        try:
            verified = jwt.JWT(
                jwt=token,
                key=self.key_store.verification_keys,
                algs=list(ALLOWED_ALGORITHMS),
                check_claims=False,
            )
        except jwt.JWTMissingKey as e:
            raise TokenError.unknown_key(header.get("kid")) from e
        except jws.InvalidJWSSignature as e:
            raise TokenError.invalid_signature() from e
        except (JWException, ValueError, TypeError) as e:
            raise TokenError.malformed(type(e).__name__) from e

        try:
            claims = json.loads(verified.claims)
        except ValueError as e:
            raise TokenError.malformed("claims are not JSON") from e
        if not isinstance(claims, dict):
            raise TokenError.malformed("claims are not an object")

        self._check_claims(claims)

        try:
            return TepClaims.model_validate(claims)
        except ValidationError as e:
            raise TokenError.malformed(f"{e.error_count()} invalid claims") from e

    def _check_claims(self, claims: Dict[str, Any]) -> None:
        if claims.get("iss") != self.issuer:
            raise TokenError.invalid_issuer(claims.get("iss"))
        if not claims.get("aud"):
            raise TokenError.missing_audience()
        if claims.get("token_type") != TOKEN_TYPE:
            raise TokenError.invalid_token_type(claims.get("token_type"))

        exp = claims.get("exp")
        nbf = claims.get("nbf")
        if not isinstance(exp, int) or not isinstance(nbf, int):
            raise TokenError.malformed("exp and nbf must be integers")

        now = self._now()
        if exp <= now:
            raise TokenError.expired()
        if nbf > now:
            raise TokenError.not_yet_valid()


def _read_header(token: str) -> Dict[str, Any]:
    segments = token.split(".")
    if len(segments) != 3:
        raise TokenError.malformed("expected three segments")
    encoded = segments[0] + "=" * (-len(segments[0]) % 4)
    try:
        header = json.loads(base64.urlsafe_b64decode(encoded))
    except ValueError as e:
        raise TokenError.malformed("header is not readable") from e
    if not isinstance(header, dict):
        raise TokenError.malformed("header is not an object")
    return header
