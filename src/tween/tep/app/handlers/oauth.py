"""
OAuth 2.0 Handlers

This module implements the broker's OAuth surface. Mini-apps trade a user's DAS session for a TEP
token here, users approve sensitive scopes here, and resource servers verify TEP tokens against
the published keys.

Token exchange with consent:
1. The mini-app posts the user's DAS token to ``/oauth2/token`` (RFC 8693 token exchange)
2. If a sensitive scope has never been approved, the response is ``consent_required`` (403) with a
   ``consent_ui_endpoint``
3. The user opens the consent page and approves or declines
4. The mini-app retries the identical exchange and receives the token

The handlers in this module provide the following endpoints:
- POST /oauth2/token - token exchange, authorization code, refresh token and device code grants
- POST /oauth2/device/authorization - RFC 8628 device authorization
- POST /oauth2/device/token - device code polling only
- GET /oauth2/authorize - authorization request caching and redirect to the DAS
- GET /oauth2/consent - consent page
- POST /oauth2/consent - approve or decline a consent session
- POST /oauth2/revoke - RFC 7009 revocation
- POST /oauth2/introspect - TEP token introspection
- GET /.well-known/jwks.json - public keys for TEP token verification
"""

import logging
from typing import Any, Dict

import aiohttp_jinja2
from aiohttp import web

from tween.tep.app.config import (
    ConsentResolverAppKey,
    KeyStoreAppKey,
    OrchestratorAppKey,
    TokenCodecAppKey,
)
from tween.tep.app.handlers.helpers import json_error, unexpected_error_response
from tween.tep.consent import ConsentError
from tween.tep.delegation import DEVICE_CODE_GRANT
from tween.tep.exchange import OAuthError
from tween.tep.tokens import TokenError

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

SCOPE_DESCRIPTIONS = {
    "user:read": "See your basic profile",
    "user:read:extended": "See your extended profile",
    "user:read:contacts": "See your contacts",
    "wallet:balance": "See your wallet balance",
    "wallet:pay": "Send payments from your wallet",
    "wallet:request": "Request money on your behalf",
    "wallet:history": "See your transaction history",
    "messaging:send": "Send messages on your behalf",
    "messaging:read": "Read your messages",
    "room:create": "Create rooms on your behalf",
    "room:invite": "Invite people to rooms on your behalf",
    "storage:read": "Read data the app stored for you",
    "storage:write": "Store data for you",
}


async def _read_params(request: web.Request) -> Dict[str, Any]:
    if request.content_type == "application/json":
        body = await request.json()
        if not isinstance(body, dict):
            raise OAuthError.invalid_request("Request body must be a JSON object")
        return body
    return dict(await request.post())


def oauth_error_response(error: OAuthError) -> web.Response:
    return web.json_response(error.to_dict(), status=error.status, headers=NO_STORE)


async def handle_token(request: web.Request):
    """
    Handle POST /oauth2/token.

    Returns the token response, the ``consent_required`` body with a 403, or an OAuth error.
    """
    orchestrator = request.app[OrchestratorAppKey]
    try:
        params = await _read_params(request)
        result = await orchestrator.token(params)
    except OAuthError as e:
        logger.info("Token request failed: %s", e)
        return oauth_error_response(e)
    except ValueError:
        return oauth_error_response(OAuthError.invalid_request("Malformed request body"))
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_token")

    return web.json_response(
        result.to_dict(), status=getattr(result, "status", 200), headers=NO_STORE
    )


async def handle_device_authorization(request: web.Request):
    """Handle POST /oauth2/device/authorization."""
    orchestrator = request.app[OrchestratorAppKey]
    try:
        params = await _read_params(request)
        authorization = await orchestrator.device_authorization(params)
    except OAuthError as e:
        logger.info("Device authorization failed: %s", e)
        return oauth_error_response(e)
    except ValueError:
        return oauth_error_response(OAuthError.invalid_request("Malformed request body"))
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_device_authorization")

    return web.json_response(
        authorization.model_dump(mode="json", exclude_none=True), headers=NO_STORE
    )


async def handle_device_token(request: web.Request):
    """Handle POST /oauth2/device/token, which only accepts the device code grant."""
    orchestrator = request.app[OrchestratorAppKey]
    try:
        params = await _read_params(request)
        if params.get("grant_type") != DEVICE_CODE_GRANT:
            raise OAuthError.unsupported_grant_type(str(params.get("grant_type")))
        result = await orchestrator.redeem_device_code(params)
    except OAuthError as e:
        logger.info("Device token request failed: %s", e)
        return oauth_error_response(e)
    except ValueError:
        return oauth_error_response(OAuthError.invalid_request("Malformed request body"))
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_device_token")

    return web.json_response(result.to_dict(), headers=NO_STORE)


async def handle_authorize(request: web.Request):
    orchestrator = request.app[OrchestratorAppKey]
    try:
        redirect_destination = await orchestrator.authorize(request.query)
    except OAuthError as e:
        return oauth_error_response(e)
    raise web.HTTPFound(redirect_destination)


async def handle_consent_page(request: web.Request):
    consent_resolver = request.app[ConsentResolverAppKey]
    session_id = request.query.get("session")
    session = await consent_resolver.load_session(session_id) if session_id else None
    if session is None:
        return await aiohttp_jinja2.render_template_async(
            "alert.html",
            request,
            context={"error_message": "This consent request was not found or has expired."},
            status=404,
        )

    return await aiohttp_jinja2.render_template_async(
        "consent.html",
        request,
        context={
            "session_id": session.session_id,
            "app_id": session.app_id,
            "subject": session.subject,
            "consent_scopes": [
                (scope, SCOPE_DESCRIPTIONS.get(scope, scope))
                for scope in session.consent_required_scopes
            ],
            "pre_approved_scopes": [
                (scope, SCOPE_DESCRIPTIONS.get(scope, scope))
                for scope in session.pre_approved_scopes
            ],
        },
    )


async def handle_consent_submit(request: web.Request):
    """
    Handle POST /oauth2/consent with ``{session, approved}`` as a form or JSON body.
    """
    consent_resolver = request.app[ConsentResolverAppKey]
    try:
        params = await _read_params(request)
    except (OAuthError, ValueError):
        return json_error(400, "invalid_request", "Malformed request body")

    session_id = params.get("session")
    if not session_id:
        return json_error(400, "invalid_request", "session is required")
    approved = params.get("approved")
    approved = approved is True or str(approved).lower() == "true"

    try:
        if not approved:
            await consent_resolver.decline(session_id)
            return oauth_error_response(OAuthError.consent_declined())
        session = await consent_resolver.approve(session_id)
    except ConsentError as e:
        logger.info("Consent submission rejected: %s", e)
        return json_error(404, "invalid_request", "Consent session not found or expired")
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_consent_submit")

    return web.json_response(
        {
            "status": "approved",
            "approved_scopes": session.consent_required_scopes,
            "message": "Authorization recorded. Retry the token request to continue.",
        }
    )


async def handle_revoke(request: web.Request):
    orchestrator = request.app[OrchestratorAppKey]
    data = await request.post()
    token = data.get("token")
    if not token:
        return oauth_error_response(OAuthError.invalid_request("token is required"))

    try:
        await orchestrator.revoke(str(token), data.get("token_type_hint"))
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_revoke")
    return web.json_response({}, headers=NO_STORE)


async def handle_introspect(request: web.Request):
    codec = request.app[TokenCodecAppKey]
    data = await request.post()
    token = data.get("token")
    if not token:
        return oauth_error_response(OAuthError.invalid_request("token is required"))

    try:
        claims = codec.decode(str(token))
    except TokenError as e:
        logger.debug("Introspected an inactive token: %s", e.kind.value)
        return web.json_response({"active": False}, headers=NO_STORE)

    return web.json_response(
        {"active": True, **claims.model_dump(mode="json", exclude_none=True)}, headers=NO_STORE
    )


async def handle_jwks(request: web.Request):
    key_store = request.app[KeyStoreAppKey]
    return web.json_response(key_store.public_jwks())
