from dataclasses import dataclass
import logging
from typing import Any, Optional

from aiohttp import web
import sentry_sdk

from tween.tep.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
    TokenCodecAppKey,
    UserStoreAppKey,
)
from tween.tep.store import UserRecord
from tween.tep.tokens import TepClaims, TokenError

logger = logging.getLogger(__name__)


@dataclass(repr=False, eq=False)
class AuthToken:
    """
    An authenticated request: the verified claims of the presented TEP token and the local user
    they were minted for.
    """

    claims: TepClaims
    user: UserRecord

    @property
    def subject(self) -> str:
        return self.user.subject

    @property
    def app_id(self) -> str:
        return self.claims.aud


class AuthenticationException(Exception):
    """
    Exception raised for authentication failures.

    ``error`` is the machine-readable code returned to the caller and ``status`` the HTTP status
    the failure is reported with.
    """

    def __init__(self, error: str, status: int, message: str) -> None:
        super().__init__(message)
        self.error = error
        self.status = status

    @property
    def description(self) -> str:
        return str(self).split(" ", 1)[-1]

    def to_response(self) -> web.Response:
        headers = {"WWW-Authenticate": f'Bearer error="{self.error}"'} if self.status == 401 else None
        return json_error(self.status, self.error, self.description, headers=headers)

    @staticmethod
    def missing_token() -> "AuthenticationException":
        """No bearer token was presented."""
        return AuthenticationException(
            "missing_token", 401, "error-auth-helper-1000 Authorization header required"
        )

    @staticmethod
    def invalid_token(error: TokenError) -> "AuthenticationException":
        """The bearer token failed verification."""
        return AuthenticationException(
            "invalid_token", 401, f"error-auth-helper-1001 Token rejected: {error.kind.value}"
        )

    @staticmethod
    def user_not_found() -> "AuthenticationException":
        """The token's subject was never provisioned."""
        return AuthenticationException(
            "invalid_token", 401, "error-auth-helper-1002 User not found"
        )

    @staticmethod
    def insufficient_scope(scope: str) -> "AuthenticationException":
        return AuthenticationException(
            "insufficient_scope", 403, f"error-auth-helper-1003 Scope {scope} required"
        )


async def auth_token_helper(
    request: web.Request, required_scope: Optional[str] = None
) -> AuthToken:
    """
    Authenticate a request carrying ``Authorization: Bearer <TEP token>``.

    Raises:
        AuthenticationException: the header is missing, the token does not verify, its subject is
            unknown, or it lacks ``required_scope``
    """
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if authorization is None or not authorization.startswith("Bearer ") or len(authorization) < 8:
        raise AuthenticationException.missing_token()

    codec = request.app[TokenCodecAppKey]
    try:
        claims = codec.decode(authorization[7:].strip())
    except TokenError as e:
        request.app[MetricsClientAppKey].increment(
            "tep.auth.rejected", 1, tag_dict={"kind": e.kind.value}
        )
        logger.info("Bearer token rejected: %s", e)
        raise AuthenticationException.invalid_token(e) from e

    user = await request.app[UserStoreAppKey].find(claims.sub)
    if user is None:
        raise AuthenticationException.user_not_found()

    if required_scope is not None and not claims.has_scope(required_scope):
        raise AuthenticationException.insufficient_scope(required_scope)

    return AuthToken(claims=claims, user=user)


def json_error(
    status: int, error: str, description: str, headers: Optional[dict] = None, **extra: Any
) -> web.Response:
    body = {"error": error, "error_description": description}
    body.update({key: value for key, value in extra.items() if value is not None})
    return web.json_response(body, status=status, headers=headers)


async def unexpected_error_response(
    request: web.Request, error: Exception, context: str
) -> web.Response:
    """
    Report an exception that escaped regular flow control and build the generic 500 response.

    The exception type is only disclosed when the service runs in debug mode.
    """
    logger.exception("Unexpected error in %s", context)
    sentry_sdk.capture_exception(error)
    await request.app[HealthGaugeAppKey].record_error()

    settings = request.app.get(SettingsAppKey)
    if settings is not None and settings.debug:
        return json_error(
            500, "server_error", "An unexpected error occurred", error_type=type(error).__name__
        )
    return json_error(500, "server_error", "An unexpected error occurred")
