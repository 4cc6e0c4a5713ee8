"""
Delegated-Authentication Service Client

The DAS owns the user's primary session. The broker talks to it over form-encoded POSTs
authenticated with ``client_secret_post`` for five things:

1. ``client_credentials_grant``: a service token for the broker's own calls
2. ``introspect``: validating the subject token a mini-app presents
3. ``exchange_session_token``: an RFC 8693 exchange for a fresh upstream session token
4. ``device_authorization`` and ``poll_device_token``: the RFC 8628 device flow
5. ``revoke``: best-effort revocation

Every non-2xx answer becomes a ``DelegationError`` whose ``kind`` says who was at fault: the broker's
client credentials, the presented token, or the DAS itself. The RFC 8628 polling answers
(``authorization_pending`` and friends) keep their error code. Connection failures and timeouts
are reported as ``unavailable``. Nothing is retried here.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from time import time
from typing import Any, Callable, Dict, Optional, Sequence
from urllib.parse import urljoin

import aiohttp
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from tween.tep.app.metrics import MetricsClient, NoOpMetricsClient
from tween.tep.cache import normalize_redis_string
from tween.tep.identity import fingerprint, new_session_id, wallet_id_for
from tween.tep.tokens import SessionRef, UserContext

logger = logging.getLogger(__name__)

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
ACCESS_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:access_token"
DEFAULT_SCOPES = ("openid", "urn:matrix:org.matrix.msc2967.client:api:*")
SERVICE_TOKEN_CACHE_KEY = "das:service_token"
UPSTREAM_FALLBACK_LIFETIME = 300
DELEGATED_FROM = "das_session"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEVICE_FLOW_ERRORS = frozenset({"authorization_pending", "slow_down", "expired_token", "access_denied"})


class DelegationErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_TOKEN = "invalid_token"
    BROKER_ERROR = "broker_error"
    UNAVAILABLE = "unavailable"
    DEVICE_FLOW = "device_flow"


class DelegationError(Exception):
    def __init__(
        self,
        kind: DelegationErrorKind,
        message: str,
        status: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.error = error

    @staticmethod
    def invalid_credentials(description: str) -> "DelegationError":
        """The DAS rejected the broker's client credentials."""
        return DelegationError(
            DelegationErrorKind.INVALID_CREDENTIALS,
            f"error-delegation-1000 Client authentication rejected: {description}",
            401,
        )

    @staticmethod
    def invalid_token(description: str) -> "DelegationError":
        """The presented token is not active, expired, or otherwise rejected."""
        return DelegationError(
            DelegationErrorKind.INVALID_TOKEN,
            f"error-delegation-1001 Token rejected: {description}",
        )

    @staticmethod
    def broker_error(description: str, status: Optional[int] = None) -> "DelegationError":
        return DelegationError(
            DelegationErrorKind.BROKER_ERROR,
            f"error-delegation-1002 Delegation service error: {description}",
            status,
        )

    @staticmethod
    def unavailable(operation: str, reason: str) -> "DelegationError":
        return DelegationError(
            DelegationErrorKind.UNAVAILABLE,
            f"error-delegation-1003 Delegation service unreachable during {operation}: {reason}",
        )

    @staticmethod
    def device_flow(error: str, description: str) -> "DelegationError":
        """The DAS answered a device code poll with one of the RFC 8628 error codes."""
        return DelegationError(
            DelegationErrorKind.DEVICE_FLOW,
            f"error-delegation-1004 Device authorization {error}: {description}",
            400,
            error,
        )


class Introspection(BaseModel):
    """RFC 7662 introspection response. Fields the broker does not use are kept as extras."""

    model_config = ConfigDict(extra="allow", frozen=True)

    active: bool = False
    sub: Optional[str] = None
    scope: Optional[str] = None
    exp: Optional[int] = None
    client_id: Optional[str] = None
    username: Optional[str] = None
    device_id: Optional[str] = None
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sid")
    )
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class ServiceToken(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: int


class UpstreamSession(BaseModel):
    access_token: str
    expires_in: int
    refreshed: bool


class DeviceAuthorization(BaseModel):
    """RFC 8628 device authorization response."""

    model_config = ConfigDict(extra="allow", frozen=True)

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    expires_in: int = 900
    interval: int = 5


class DeviceToken(BaseModel):
    """Tokens the DAS issues once the user approves a device authorization."""

    model_config = ConfigDict(extra="allow", frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = UPSTREAM_FALLBACK_LIFETIME
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class DelegatedSession:
    """Everything the orchestrator needs from the DAS to mint a TEP token."""

    subject: str
    wallet_id: str
    session_id: str
    introspection: Introspection
    upstream: UpstreamSession

    @property
    def user_context(self) -> UserContext:
        return UserContext(
            display_name=self.introspection.display_name or self.introspection.username,
            avatar_url=self.introspection.avatar_url,
        )

    @property
    def session_ref(self) -> SessionRef:
        return SessionRef(
            device_id=self.introspection.device_id or "unknown",
            session_id=self.introspection.session_id or "unknown",
        )


class DelegationBroker:
    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        client_id: str,
        client_secret: str,
        token_url: str,
        introspection_url: str,
        revocation_url: str,
        redis_client: Any = None,
        device_authorization_url: Optional[str] = None,
        metrics_client: Optional[MetricsClient] = None,
        timeout: float = 30,
        default_scopes: Sequence[str] = DEFAULT_SCOPES,
        service_token_margin: int = 60,
        clock: Callable[[], float] = time,
    ) -> None:
        self.http_session = http_session
        self.client_id = client_id
        self._client_secret = client_secret
        self.token_url = token_url
        self.introspection_url = introspection_url
        self.revocation_url = revocation_url
        self.device_authorization_url = device_authorization_url or urljoin(
            token_url, "device/authorization"
        )
        self.redis_client = redis_client
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.default_scopes = tuple(default_scopes)
        self.service_token_margin = service_token_margin
        self._clock = clock

    def _client_auth(self) -> Dict[str, str]:
        return {"client_id": self.client_id, "client_secret": self._client_secret}

    async def client_credentials_grant(self, scopes: Optional[Sequence[str]] = None) -> ServiceToken:
        payload = await self._post_form(
            "client_credentials",
            self.token_url,
            {
                "grant_type": "client_credentials",
                "scope": " ".join(scopes or self.default_scopes),
                **self._client_auth(),
            },
        )
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise DelegationError.broker_error("client credentials response has no access_token")

        expires_in = _as_int(payload.get("expires_in"), UPSTREAM_FALLBACK_LIFETIME)
        return ServiceToken(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_in=expires_in,
            expires_at=int(self._clock()) + expires_in,
        )

    async def service_token(self) -> str:
        """
        Return the broker's service token, reusing the cached one until it is close to expiry.
        """
        if self.redis_client is not None:
            cached = await self.redis_client.get(SERVICE_TOKEN_CACHE_KEY)
            if cached is not None:
                return normalize_redis_string(cached)

        token = await self.client_credentials_grant()
        ttl = token.expires_in - self.service_token_margin
        if self.redis_client is not None and ttl > 0:
            await self.redis_client.set(SERVICE_TOKEN_CACHE_KEY, token.access_token, ex=ttl)
        return token.access_token

    async def introspect(self, token: str) -> Introspection:
        payload = await self._post_form(
            "introspect", self.introspection_url, {"token": token, **self._client_auth()}
        )
        try:
            return Introspection.model_validate(payload)
        except ValidationError as e:
            raise DelegationError.broker_error("introspection response has an unexpected shape") from e

    async def validate_for_session(self, token: str) -> Introspection:
        """Introspect a token the broker is about to rely on and require it to be live."""
        introspection = await self.introspect(token)
        if not introspection.active:
            raise DelegationError.invalid_token("token is not active")
        if introspection.exp is not None and introspection.exp <= int(self._clock()):
            raise DelegationError.invalid_token("token has expired")
        return introspection

    async def exchange_session_token(self, subject_token: str) -> UpstreamSession:
        """
        Exchange the user's DAS token for a fresh upstream session token.

        When the DAS refuses the exchange the presented token is reused with a short lifetime, so
        the user can still be issued a TEP token.
        """
        try:
            payload = await self._post_form(
                "token_exchange",
                self.token_url,
                {
                    "grant_type": TOKEN_EXCHANGE_GRANT,
                    "subject_token": subject_token,
                    "subject_token_type": ACCESS_TOKEN_TYPE,
                    "requested_token_type": ACCESS_TOKEN_TYPE,
                    **self._client_auth(),
                },
            )
        except DelegationError as e:
            logger.warning(
                "Upstream session exchange failed for %s (%s), reusing the presented token",
                fingerprint(subject_token),
                e.kind.value,
            )
            return UpstreamSession(
                access_token=subject_token,
                expires_in=UPSTREAM_FALLBACK_LIFETIME,
                refreshed=False,
            )

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            logger.warning("Upstream session exchange returned no access_token, reusing the presented token")
            return UpstreamSession(
                access_token=subject_token,
                expires_in=UPSTREAM_FALLBACK_LIFETIME,
                refreshed=False,
            )

        return UpstreamSession(
            access_token=access_token,
            expires_in=_as_int(payload.get("expires_in"), UPSTREAM_FALLBACK_LIFETIME),
            refreshed=True,
        )

    async def exchange_for_delegated_session(
        self, subject_token: str, introspection: Introspection
    ) -> DelegatedSession:
        if not introspection.active:
            raise DelegationError.invalid_token("subject token is not active")
        if not introspection.sub:
            raise DelegationError.invalid_token("subject token has no subject")

        upstream = await self.exchange_session_token(subject_token)
        return DelegatedSession(
            subject=introspection.sub,
            wallet_id=wallet_id_for(introspection.sub),
            session_id=new_session_id(),
            introspection=introspection,
            upstream=upstream,
        )

    async def device_authorization(self, scopes: Sequence[str]) -> DeviceAuthorization:
        payload = await self._post_form(
            "device_authorization",
            self.device_authorization_url,
            {"scope": " ".join(scopes), **self._client_auth()},
        )
        try:
            return DeviceAuthorization.model_validate(payload)
        except ValidationError as e:
            raise DelegationError.broker_error(
                "device authorization response has an unexpected shape"
            ) from e

    async def poll_device_token(self, device_code: str) -> DeviceToken:
        """
        Ask the DAS whether the user has approved ``device_code``.

        Raises:
            DelegationError: ``device_flow`` while the authorization is pending, polled too fast,
                expired, or denied; any other kind as for every DAS call
        """
        payload = await self._post_form(
            "device_token",
            self.token_url,
            {"grant_type": DEVICE_CODE_GRANT, "device_code": device_code, **self._client_auth()},
        )
        try:
            return DeviceToken.model_validate(payload)
        except ValidationError as e:
            raise DelegationError.broker_error("device token response has no access_token") from e

    async def revoke(self, token: str, token_type_hint: Optional[str] = None) -> bool:
        form = {"token": token, **self._client_auth()}
        if token_type_hint:
            form["token_type_hint"] = token_type_hint
        try:
            await self._post_form("revoke", self.revocation_url, form, allow_empty=True)
        except DelegationError as e:
            logger.warning("Revocation of %s failed: %s", fingerprint(token), e)
            return False
        return True

    async def _post_form(
        self,
        operation: str,
        url: str,
        form: Dict[str, str],
        allow_empty: bool = False,
    ) -> Dict[str, Any]:
        start_time = time()
        outcome = "success"
        try:
            async with self.http_session.post(
                url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            ) as resp:
                body = await resp.text()
                if not 200 <= resp.status < 300:
                    raise self._translate_error(operation, resp.status, body)
                if allow_empty and not body.strip():
                    return {}
                try:
                    payload = json.loads(body)
                except ValueError as e:
                    raise DelegationError.broker_error(
                        f"{operation} returned an unparseable body", resp.status
                    ) from e
                if not isinstance(payload, dict):
                    raise DelegationError.broker_error(
                        f"{operation} returned a non-object body", resp.status
                    )
                return payload
        except DelegationError as e:
            outcome = e.kind.value
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            outcome = DelegationErrorKind.UNAVAILABLE.value
            raise DelegationError.unavailable(operation, type(e).__name__) from e
        finally:
            self.metrics_client.timer(
                "tep.das.request.time",
                time() - start_time,
                tag_dict={"operation": operation},
            )
            self.metrics_client.increment(
                "tep.das.request.count",
                1,
                tag_dict={"operation": operation, "outcome": outcome},
            )

    @staticmethod
    def _translate_error(operation: str, status: int, body: str) -> DelegationError:
        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("DAS %s failed with HTTP %d and an unparseable body", operation, status)
            return DelegationError.broker_error(
                f"{operation} failed with HTTP {status} and an unparseable body", status
            )

        error = payload.get("error") if isinstance(payload, dict) else None
        description = (
            payload.get("error_description") if isinstance(payload, dict) else None
        ) or error or f"HTTP {status}"
        logger.warning("DAS %s failed with HTTP %d: %s", operation, status, error)

        if error == "invalid_client":
            return DelegationError.invalid_credentials(description)
        if error in ("invalid_token", "invalid_grant"):
            return DelegationError.invalid_token(description)
        if error in DEVICE_FLOW_ERRORS:
            return DelegationError.device_flow(error, description)
        return DelegationError.broker_error(f"{operation} failed: {description}", status)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
