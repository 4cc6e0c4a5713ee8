"""
Token Exchange Orchestrator

Turns grant requests arriving at ``/oauth2/token`` into TEP tokens. One code path per grant type:

- **token exchange** (RFC 8693): authenticate the mini-app, introspect the user's DAS token,
  provision the user, ask the ConsentResolver whether any sensitive scope still needs approval, and
  only then obtain a delegated session and mint
- **authorization code**: the request cached by ``authorize`` under its ``state`` is the source of
  truth; consent is not re-evaluated because the scopes were fixed at authorize time, and the
  request is consumed by the one redemption that mints
- **refresh token**: the cached RefreshRecord names subject, app and scopes; a new handle pointing
  at a copy of the record is issued and the old one is left to expire
- **device code** (RFC 8628): the device polls until the user approves at the DAS, then receives
  the DAS token, which it trades for a TEP token with the token exchange grant

Tokens minted from a delegated DAS session also carry the upstream session token as
``matrix_access_token``.

Every failure surfaces as an ``OAuthError`` whose ``kind`` maps to the RFC 6749 error code and HTTP
status. A consent requirement is not an error; ``token`` returns ``ConsentRequired`` for it.
"""

import hmac
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import urlencode

from tween.tep.app.metrics import MetricsClient, NoOpMetricsClient
from tween.tep.cache import consume_record, read_record, write_record
from tween.tep.consent import ConsentResolver
from tween.tep.delegation import (
    ACCESS_TOKEN_TYPE,
    DELEGATED_FROM,
    DEVICE_CODE_GRANT,
    TOKEN_EXCHANGE_GRANT,
    DelegationBroker,
    DelegationError,
    DelegationErrorKind,
    DeviceAuthorization,
    Introspection,
)
from tween.tep.identity import fingerprint, new_refresh_handle, new_session_id
from tween.tep.ledger import LedgerError, TransferLedgerClient
from tween.tep.model.mini_apps import APP_ID_PATTERN
from tween.tep.store import AppRecord, AppRegistry, ApprovalStore, UserRecord, UserStore
from tween.tep.tokens import ApprovalHistoryEntry, TokenCodec

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_GRANT = "authorization_code"
REFRESH_TOKEN_GRANT = "refresh_token"
DEFAULT_SCOPE = "user:read"
KNOWN_SCOPES = frozenset(
    {
        "user:read",
        "user:read:extended",
        "user:read:contacts",
        "wallet:balance",
        "wallet:pay",
        "wallet:request",
        "wallet:history",
        "messaging:send",
        "messaging:read",
        "room:create",
        "room:invite",
        "storage:read",
        "storage:write",
    }
)
REFRESH_TOKEN_TTL = 30 * 86400
AUTHORIZATION_REQUEST_TTL = 900
DEVICE_AUTHORIZATION_TTL = 900
DEVICE_DEFAULT_SCOPE = "urn:matrix:org.matrix.msc2967.client:api:*"
REFRESH_DELEGATION = "refresh_token"


def refresh_token_key(handle: str) -> str:
    return f"refresh_token:{handle}"


def authorization_request_key(state: str) -> str:
    return f"auth_request:{state}"


def device_authorization_key(device_code: str) -> str:
    return f"device_auth:{device_code}"


class OAuthErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_GRANT = "invalid_grant"
    INVALID_CLIENT = "invalid_client"
    INVALID_SCOPE = "invalid_scope"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    CONSENT_DECLINED = "consent_declined"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    SERVER_ERROR = "server_error"
    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    EXPIRED_TOKEN = "expired_token"
    ACCESS_DENIED = "access_denied"


OAUTH_ERROR_STATUS = {
    OAuthErrorKind.INVALID_REQUEST: 400,
    OAuthErrorKind.INVALID_GRANT: 400,
    OAuthErrorKind.INVALID_CLIENT: 401,
    OAuthErrorKind.INVALID_SCOPE: 400,
    OAuthErrorKind.UNSUPPORTED_GRANT_TYPE: 400,
    OAuthErrorKind.UNSUPPORTED_RESPONSE_TYPE: 400,
    OAuthErrorKind.CONSENT_DECLINED: 403,
    OAuthErrorKind.TEMPORARILY_UNAVAILABLE: 503,
    OAuthErrorKind.SERVER_ERROR: 500,
    OAuthErrorKind.AUTHORIZATION_PENDING: 400,
    OAuthErrorKind.SLOW_DOWN: 400,
    OAuthErrorKind.EXPIRED_TOKEN: 400,
    OAuthErrorKind.ACCESS_DENIED: 400,
}

DEVICE_FLOW_ERRORS = {
    OAuthErrorKind.AUTHORIZATION_PENDING: (1009, "User has not completed authorization yet"),
    OAuthErrorKind.SLOW_DOWN: (1010, "Polling too frequently"),
    OAuthErrorKind.EXPIRED_TOKEN: (1011, "Device authorization has expired"),
    OAuthErrorKind.ACCESS_DENIED: (1012, "User denied authorization"),
}


class OAuthError(Exception):
    def __init__(self, kind: OAuthErrorKind, code: int, description: str) -> None:
        super().__init__(f"error-oauth-{code} {description}")
        self.kind = kind
        self.description = description

    @property
    def status(self) -> int:
        return OAUTH_ERROR_STATUS[self.kind]

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.kind.value, "error_description": self.description}

    @staticmethod
    def invalid_request(description: str) -> "OAuthError":
        return OAuthError(OAuthErrorKind.INVALID_REQUEST, 1000, description)

    @staticmethod
    def invalid_grant(description: str) -> "OAuthError":
        return OAuthError(OAuthErrorKind.INVALID_GRANT, 1001, description)

    @staticmethod
    def invalid_client(description: str = "Client authentication failed") -> "OAuthError":
        return OAuthError(OAuthErrorKind.INVALID_CLIENT, 1002, description)

    @staticmethod
    def invalid_scope(scopes: Sequence[str]) -> "OAuthError":
        return OAuthError(
            OAuthErrorKind.INVALID_SCOPE, 1003, f"Invalid scopes: {', '.join(scopes)}"
        )

    @staticmethod
    def unsupported_grant_type(grant_type: str) -> "OAuthError":
        return OAuthError(
            OAuthErrorKind.UNSUPPORTED_GRANT_TYPE, 1004, f"Grant type {grant_type} is not supported"
        )

    @staticmethod
    def unsupported_response_type() -> "OAuthError":
        return OAuthError(
            OAuthErrorKind.UNSUPPORTED_RESPONSE_TYPE, 1005, "Only the code response type is supported"
        )

    @staticmethod
    def consent_declined() -> "OAuthError":
        return OAuthError(OAuthErrorKind.CONSENT_DECLINED, 1006, "User declined authorization")

    @staticmethod
    def temporarily_unavailable() -> "OAuthError":
        return OAuthError(
            OAuthErrorKind.TEMPORARILY_UNAVAILABLE,
            1007,
            "Authentication service temporarily unavailable",
        )

    @staticmethod
    def server_error(description: str = "An unexpected error occurred") -> "OAuthError":
        return OAuthError(OAuthErrorKind.SERVER_ERROR, 1008, description)

    @staticmethod
    def device_flow(error: str) -> "OAuthError":
        """One of the RFC 8628 polling answers, passed through to the device."""
        kind = OAuthErrorKind(error)
        code, description = DEVICE_FLOW_ERRORS[kind]
        return OAuthError(kind, code, description)


def translate_delegation_error(error: DelegationError) -> OAuthError:
    """Map every DelegationError kind onto the error the token endpoint reports."""
    if error.kind is DelegationErrorKind.INVALID_TOKEN:
        return OAuthError.invalid_grant("Subject token was rejected by the authentication service")
    if error.kind is DelegationErrorKind.INVALID_CREDENTIALS:
        logger.error("Authentication service rejected the broker's client credentials: %s", error)
        return OAuthError.server_error("Authentication service rejected the broker")
    if error.kind is DelegationErrorKind.BROKER_ERROR:
        logger.error("Authentication service error: %s", error)
        return OAuthError.server_error("Unexpected response from the authentication service")
    if error.kind is DelegationErrorKind.UNAVAILABLE:
        return OAuthError.temporarily_unavailable()
    if error.kind is DelegationErrorKind.DEVICE_FLOW:
        return OAuthError.device_flow(error.error or OAuthErrorKind.AUTHORIZATION_PENDING.value)
    raise ValueError(f"Unhandled delegation error kind {error.kind}")


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    user_id: str
    wallet_id: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    matrix_access_token: Optional[str] = None
    matrix_expires_in: Optional[int] = None

    @property
    def delegated_session(self) -> bool:
        return self.matrix_access_token is not None

    def to_dict(self) -> Dict[str, Any]:
        response = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
            "user_id": self.user_id,
            "wallet_id": self.wallet_id,
        }
        if self.refresh_token:
            response["refresh_token"] = self.refresh_token
        if self.delegated_session:
            response["matrix_access_token"] = self.matrix_access_token
            response["matrix_expires_in"] = self.matrix_expires_in
            response["delegated_session"] = True
        return response


@dataclass(frozen=True)
class DeviceTokenResponse:
    """
    DAS tokens for an approved device. The device exchanges ``access_token`` for a TEP token with
    the token exchange grant.
    """

    access_token: str
    expires_in: int
    user_id: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "user_id": self.user_id,
            "message": f"Exchange this token for TEP using {TOKEN_EXCHANGE_GRANT}",
        }


@dataclass(frozen=True)
class ConsentRequired:
    session_id: str
    consent_required_scopes: List[str]
    pre_approved_scopes: List[str]

    status = 403

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "consent_required",
            "error_description": "User consent required for sensitive scopes",
            "consent_required_scopes": self.consent_required_scopes,
            "pre_approved_scopes": self.pre_approved_scopes,
            "consent_ui_endpoint": f"/oauth2/consent?session={self.session_id}",
        }


class TokenExchangeOrchestrator:
    def __init__(
        self,
        codec: TokenCodec,
        broker: DelegationBroker,
        consent_resolver: ConsentResolver,
        approval_store: ApprovalStore,
        user_store: UserStore,
        app_registry: AppRegistry,
        redis_client,
        das_authorize_url: str,
        ledger_client: Optional[TransferLedgerClient] = None,
        refresh_token_ttl: int = REFRESH_TOKEN_TTL,
        authorization_request_ttl: int = AUTHORIZATION_REQUEST_TTL,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.codec = codec
        self.broker = broker
        self.consent_resolver = consent_resolver
        self.approval_store = approval_store
        self.user_store = user_store
        self.app_registry = app_registry
        self.redis_client = redis_client
        self.das_authorize_url = das_authorize_url
        self.ledger_client = ledger_client
        self.refresh_token_ttl = refresh_token_ttl
        self.authorization_request_ttl = authorization_request_ttl
        self.metrics_client = metrics_client or NoOpMetricsClient()

    async def token(
        self, params: Mapping[str, Any]
    ) -> Union[TokenResponse, ConsentRequired, DeviceTokenResponse]:
        grant_type = _require(params, "grant_type")
        if grant_type == TOKEN_EXCHANGE_GRANT:
            return await self.exchange_token(params)
        if grant_type == AUTHORIZATION_CODE_GRANT:
            return await self.redeem_authorization_code(params)
        if grant_type == REFRESH_TOKEN_GRANT:
            return await self.refresh(params)
        if grant_type == DEVICE_CODE_GRANT:
            return await self.redeem_device_code(params)
        raise OAuthError.unsupported_grant_type(grant_type)

    async def exchange_token(
        self, params: Mapping[str, Any]
    ) -> Union[TokenResponse, ConsentRequired]:
        subject_token = _require(params, "subject_token")
        subject_token_type = _require(params, "subject_token_type")
        client_id = _require(params, "client_id")
        if subject_token_type != ACCESS_TOKEN_TYPE:
            raise OAuthError.invalid_request("Unsupported subject_token_type")

        miniapp_context = _parse_context(params.get("miniapp_context"))
        scopes = _parse_scopes(params.get("scope")) or [DEFAULT_SCOPE]

        app = await self._authenticate_client(client_id, _optional(params, "client_secret"))
        _check_scope_ceiling(app, scopes)
        introspection = await self._introspect(subject_token)
        user = await self.user_store.find_or_create(introspection.sub)

        decision = await self.consent_resolver.resolve(user.subject, app.app_id, scopes)
        if decision.consent_required:
            return ConsentRequired(
                session_id=decision.session_id,
                consent_required_scopes=decision.consent_required_scopes,
                pre_approved_scopes=decision.pre_approved_scopes,
            )

        return await self._issue_delegated(
            subject_token,
            introspection,
            user,
            app,
            decision.authorized_scopes,
            miniapp_context,
            TOKEN_EXCHANGE_GRANT,
        )

    async def redeem_authorization_code(self, params: Mapping[str, Any]) -> TokenResponse:
        """
        Redeem the authorization request cached under ``state``. The user's DAS token arrives as
        ``subject_token`` or ``matrix_access_token``. The request is consumed atomically right
        before minting, so concurrent redemptions of the same state issue at most one token.
        """
        state = _require(params, "state")
        subject_token = _optional(params, "subject_token") or _optional(
            params, "matrix_access_token"
        )
        if not subject_token:
            raise OAuthError.invalid_request("subject_token is required")

        request = await read_record(self.redis_client, authorization_request_key(state))
        if request is None:
            raise OAuthError.invalid_grant("Authorization request not found or expired")
        client_id = _optional(params, "client_id")
        if client_id and client_id != request.get("client_id"):
            raise OAuthError.invalid_grant("client_id does not match the authorization request")

        app = await self._authenticate_client(
            request.get("client_id", ""), _optional(params, "client_secret")
        )
        introspection = await self._introspect(subject_token)

        if await consume_record(self.redis_client, authorization_request_key(state)) is None:
            raise OAuthError.invalid_grant("Authorization request was already redeemed")
        user = await self.user_store.find_or_create(introspection.sub)
        return await self._issue_delegated(
            subject_token,
            introspection,
            user,
            app,
            request.get("scopes") or [DEFAULT_SCOPE],
            request.get("miniapp_context"),
            AUTHORIZATION_CODE_GRANT,
        )

    async def device_authorization(self, params: Mapping[str, Any]) -> DeviceAuthorization:
        """
        Start an RFC 8628 device authorization with the DAS on behalf of a registered client and
        remember which client it belongs to until it expires.
        """
        client_id = _require(params, "client_id")
        app = await self._authenticate_client(client_id, _optional(params, "client_secret"))
        scopes = _parse_scopes(params.get("scope")) or [DEVICE_DEFAULT_SCOPE]

        try:
            authorization = await self.broker.device_authorization(scopes)
        except DelegationError as e:
            raise translate_delegation_error(e) from e

        await write_record(
            self.redis_client,
            device_authorization_key(authorization.device_code),
            {
                "client_id": app.app_id,
                "scopes": scopes,
                "user_code": authorization.user_code,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            authorization.expires_in or DEVICE_AUTHORIZATION_TTL,
        )
        logger.info("Started device authorization %s for %s", authorization.user_code, app.app_id)
        return authorization

    async def redeem_device_code(self, params: Mapping[str, Any]) -> DeviceTokenResponse:
        device_code = _require(params, "device_code")
        record = await read_record(self.redis_client, device_authorization_key(device_code))
        if record is None:
            raise OAuthError.invalid_grant("Invalid or expired device_code")
        client_id = _require(params, "client_id")
        if client_id != record.get("client_id"):
            raise OAuthError.invalid_grant("Client ID mismatch")
        await self._authenticate_client(client_id, _optional(params, "client_secret"))

        try:
            device_token = await self.broker.poll_device_token(device_code)
        except DelegationError as e:
            raise translate_delegation_error(e) from e
        introspection = await self._introspect(device_token.access_token)

        if await consume_record(self.redis_client, device_authorization_key(device_code)) is None:
            raise OAuthError.invalid_grant("Device code was already redeemed")
        self.metrics_client.increment("tep.device.redeemed", 1)
        logger.info("Device authorization approved by %s for %s", introspection.sub, client_id)
        return DeviceTokenResponse(
            access_token=device_token.access_token,
            token_type=device_token.token_type,
            expires_in=device_token.expires_in,
            refresh_token=device_token.refresh_token,
            scope=device_token.scope,
            user_id=introspection.sub,
        )

    async def refresh(self, params: Mapping[str, Any]) -> TokenResponse:
        handle = _require(params, "refresh_token")
        record = await read_record(self.redis_client, refresh_token_key(handle))
        if record is None:
            raise OAuthError.invalid_grant("Refresh token expired or invalid")

        client_id = _optional(params, "client_id")
        if client_id and client_id != record.get("app_id"):
            raise OAuthError.invalid_grant("Refresh token was not issued to this client")

        user = await self.user_store.find(record.get("subject", ""))
        if user is None:
            raise OAuthError.invalid_grant("User not found")

        app_id = record["app_id"]
        scopes = list(record.get("scopes") or [DEFAULT_SCOPE])
        access_token = self.codec.encode(
            user.subject,
            app_id,
            scopes,
            wallet_id=user.wallet_id,
            session_id=new_session_id(),
            approval_history=await self._approval_history(user.subject, app_id, scopes),
            delegated_from=REFRESH_DELEGATION,
        )
        new_handle = await self._write_refresh_record(
            user.subject, app_id, scopes, record.get("created_at")
        )
        self.metrics_client.increment("tep.token.minted", 1, tag_dict={"grant": REFRESH_TOKEN_GRANT})
        logger.info("Refreshed token for %s on %s", user.subject, app_id)
        return TokenResponse(
            access_token=access_token,
            expires_in=self.codec.lifetime,
            scope=" ".join(scopes),
            user_id=user.subject,
            wallet_id=user.wallet_id,
            refresh_token=new_handle,
        )

    async def authorize(self, params: Mapping[str, str]) -> str:
        """
        Validate and cache an authorization request, returning the DAS URL to redirect to.
        """
        if params.get("response_type") != "code":
            raise OAuthError.unsupported_response_type()
        client_id = params.get("client_id")
        if not client_id or not re.match(APP_ID_PATTERN, client_id):
            raise OAuthError.invalid_client("Unknown client")
        redirect_uri = _require(params, "redirect_uri")
        scope = _require(params, "scope")
        state = _require(params, "state")
        code_challenge = _require(params, "code_challenge")
        if params.get("code_challenge_method") != "S256":
            raise OAuthError.invalid_request("code_challenge_method must be S256")

        app = await self.app_registry.find_app(client_id)
        if app is None:
            raise OAuthError.invalid_client("Unknown client")

        scopes = _parse_scopes(scope)
        unknown = [requested for requested in scopes if requested not in KNOWN_SCOPES]
        if unknown:
            raise OAuthError.invalid_scope(unknown)
        _check_scope_ceiling(app, scopes)

        await write_record(
            self.redis_client,
            authorization_request_key(state),
            {
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "scopes": scopes,
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "miniapp_context": _parse_context(params.get("miniapp_context")),
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            self.authorization_request_ttl,
        )
        query = urlencode(
            {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "scope": " ".join(scopes),
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{self.das_authorize_url}?{query}"

    async def revoke(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """RFC 7009 revocation. Never fails; unknown tokens are silently ignored."""
        if token_type_hint == "refresh_token" or token.startswith("rt_"):
            await self.redis_client.delete(refresh_token_key(token))
            logger.info("Revoked refresh token %s", fingerprint(token))
            return
        await self.broker.revoke(token, token_type_hint)

    async def _authenticate_client(self, client_id: str, client_secret: Optional[str]) -> AppRecord:
        app = await self.app_registry.find_app(client_id)
        if app is None:
            raise OAuthError.invalid_client("Unknown client")
        if app.requires_secret and not client_secret:
            raise OAuthError.invalid_client("Client authentication required")
        if client_secret and app.accepts_secret:
            if not app.client_secret or not hmac.compare_digest(
                client_secret.encode(), app.client_secret.encode()
            ):
                logger.warning(
                    "Client secret mismatch for %s (%s)", client_id, fingerprint(client_secret)
                )
                raise OAuthError.invalid_client()
        return app

    async def _introspect(self, subject_token: str) -> Introspection:
        try:
            introspection = await self.broker.introspect(subject_token)
        except DelegationError as e:
            raise translate_delegation_error(e) from e
        if not introspection.active:
            raise OAuthError.invalid_grant("Subject token is not active")
        if not introspection.sub:
            raise OAuthError.invalid_grant("Subject token has no subject")
        return introspection

    async def _issue_delegated(
        self,
        subject_token: str,
        introspection: Introspection,
        user: UserRecord,
        app: AppRecord,
        scopes: List[str],
        miniapp_context: Optional[Dict[str, Any]],
        grant: str,
    ) -> TokenResponse:
        try:
            session = await self.broker.exchange_for_delegated_session(subject_token, introspection)
        except DelegationError as e:
            raise translate_delegation_error(e) from e

        access_token = self.codec.encode(
            user.subject,
            app.app_id,
            scopes,
            wallet_id=user.wallet_id,
            session_id=session.session_id,
            user_context=session.user_context,
            miniapp_context=miniapp_context,
            approval_history=await self._approval_history(user.subject, app.app_id, scopes),
            delegated_from=DELEGATED_FROM,
            session_ref=session.session_ref,
        )
        refresh_handle = await self._write_refresh_record(user.subject, app.app_id, scopes)
        await self._register_wallet(user)

        self.metrics_client.increment("tep.token.minted", 1, tag_dict={"grant": grant})
        logger.info(
            "Issued token for %s on %s with scopes %s", user.subject, app.app_id, " ".join(scopes)
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=self.codec.lifetime,
            scope=" ".join(scopes),
            user_id=user.subject,
            wallet_id=user.wallet_id,
            refresh_token=refresh_handle,
            matrix_access_token=session.upstream.access_token,
            matrix_expires_in=session.upstream.expires_in,
        )

    async def _approval_history(
        self, subject: str, app_id: str, scopes: Sequence[str]
    ) -> List[ApprovalHistoryEntry]:
        entries = await self.approval_store.history(subject, app_id, scopes)
        return [
            ApprovalHistoryEntry(
                scope=entry.scope,
                approved_at=entry.approved_at,
                approval_method=entry.approval_method,
            )
            for entry in entries
        ]

    async def _write_refresh_record(
        self, subject: str, app_id: str, scopes: Sequence[str], created_at: Optional[str] = None
    ) -> str:
        handle = new_refresh_handle()
        await write_record(
            self.redis_client,
            refresh_token_key(handle),
            {
                "subject": subject,
                "app_id": app_id,
                "scopes": list(scopes),
                "created_at": created_at or datetime.now(timezone.utc).isoformat(),
            },
            self.refresh_token_ttl,
        )
        return handle

    async def _register_wallet(self, user: UserRecord) -> None:
        if self.ledger_client is None:
            return
        try:
            service_token = await self.broker.service_token()
            await self.ledger_client.register_wallet(user.subject, bearer=service_token)
        except (DelegationError, LedgerError) as e:
            logger.warning("Wallet registration for %s failed: %s", user.subject, e)


def _optional(params: Mapping[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    if value is not None and not isinstance(value, str):
        raise OAuthError.invalid_request(f"{name} must be a string")
    return value


def _require(params: Mapping[str, Any], name: str) -> str:
    value = _optional(params, name)
    if not value:
        raise OAuthError.invalid_request(f"{name} is required")
    return value


def _parse_scopes(scope: Any) -> List[str]:
    if scope is not None and not isinstance(scope, str):
        raise OAuthError.invalid_request("scope must be a space-delimited string")
    return list(dict.fromkeys((scope or "").split()))


def _parse_context(raw: Any) -> Optional[Dict[str, Any]]:
    """``miniapp_context`` arrives as a JSON object in a JSON body or as encoded JSON in a form."""
    if not raw:
        return None
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise OAuthError.invalid_request("miniapp_context must be a JSON object")
    try:
        context = json.loads(raw)
    except ValueError as e:
        raise OAuthError.invalid_request("Invalid miniapp_context JSON") from e
    if not isinstance(context, dict):
        raise OAuthError.invalid_request("miniapp_context must be a JSON object")
    return context


def _check_scope_ceiling(app: AppRecord, scopes: Sequence[str]) -> None:
    if not app.registered_scopes:
        return
    outside = [scope for scope in scopes if scope not in app.registered_scopes]
    if outside:
        raise OAuthError.invalid_scope(outside)
