"""
Wallet Handlers

Authenticated with TEP bearer tokens. Balance and history reads need ``wallet:balance``; initiating
and confirming a P2P transfer needs ``wallet:pay``. The recipient's accept and reject, and the
verification status read, only need a valid token. Resolving another user's wallet needs either
``wallet:pay`` or ``wallet:balance``.

The ledger client owns idempotency and breaker protection; these handlers validate input, check the
room, map ``LedgerError`` kinds to responses, and announce transfers to their rooms.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Sequence

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from tween.tep.app.config import (
    EventPublisherAppKey,
    RoomDirectoryAppKey,
    TransferLedgerAppKey,
    UserStoreAppKey,
)
from tween.tep.app.handlers.helpers import (
    AuthenticationException,
    AuthToken,
    auth_token_helper,
    json_error,
    unexpected_error_response,
)
from tween.tep.ledger import (
    COMPLETED,
    REJECTED,
    AuthProofPayload,
    LedgerError,
    LedgerErrorKind,
    Transfer,
)
from tween.tep.rooms import (
    P2P_STATUS_EVENT,
    P2P_TRANSFER_EVENT,
    p2p_status_content,
    p2p_transfer_content,
)

logger = logging.getLogger(__name__)

WALLET_BALANCE_SCOPE = "wallet:balance"
WALLET_PAY_SCOPE = "wallet:pay"
REFUND_DELAY = timedelta(seconds=30)
RESOLVE_SCOPES = (WALLET_PAY_SCOPE, WALLET_BALANCE_SCOPE)
MAX_BATCH_RESOLVE = 100
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 100
VERIFICATION_FIELDS = (
    "level",
    "level_name",
    "verified_at",
    "limits",
    "features",
    "can_upgrade",
    "next_level",
    "upgrade_requirements",
)
RESOLVE_FIELDS = (
    "wallet_id",
    "wallet_status",
    "display_name",
    "avatar_url",
    "payment_enabled",
    "created_at",
)


class InitiateTransferRequest(BaseModel):
    recipient: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    idempotency_key: str = Field(min_length=1)
    room_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=280)


class ConfirmTransferRequest(BaseModel):
    auth_proof: AuthProofPayload
    idempotency_key: Optional[str] = None


class RejectTransferRequest(BaseModel):
    reason: Optional[str] = None


class ResolveBatchRequest(BaseModel):
    user_ids: List[str]
    room_id: Optional[str] = None


def ledger_error_response(error: LedgerError) -> web.Response:
    """Map every LedgerError kind onto an HTTP response."""
    if error.kind is LedgerErrorKind.INVALID_REQUEST:
        return json_error(400, "invalid_request", error.description)
    if error.kind is LedgerErrorKind.DUPLICATE_REQUEST:
        return json_error(409, "duplicate_request", error.description, transfer_id=error.transfer_id)
    if error.kind is LedgerErrorKind.SERVICE_UNAVAILABLE:
        headers = (
            {"Retry-After": str(max(1, int(error.retry_after)))}
            if error.retry_after is not None
            else None
        )
        return json_error(503, "service_unavailable", error.description, headers=headers)
    if error.kind is LedgerErrorKind.REJECTED:
        return json_error(
            error.status or 400, error.code or "ledger_rejected", error.description
        )
    if error.kind is LedgerErrorKind.SERVER_ERROR:
        logger.error("Ledger server error: %s", error)
        return json_error(500, "server_error", error.description)
    raise ValueError(f"Unhandled ledger error kind {error.kind}")


async def _read_model(request: web.Request, model, allow_empty: bool = False):
    if allow_empty and not request.can_read_body:
        return model()
    try:
        return model.model_validate(await request.json())
    except ValueError as e:
        raise LedgerError.invalid_request(_validation_description(e)) from e


def _validation_description(error: ValueError) -> str:
    if isinstance(error, ValidationError):
        first = error.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return "Request body must be JSON"


def _transfer_body(transfer: Transfer) -> Dict[str, Any]:
    return transfer.model_dump(mode="json", exclude_none=True)


async def _announce_status(request: web.Request, transfer: Transfer, **details: Any) -> None:
    if not transfer.room_id:
        return
    await request.app[EventPublisherAppKey].publish(
        transfer.room_id,
        P2P_STATUS_EVENT,
        p2p_status_content(transfer.transfer_id, transfer.status, **details),
    )


async def handle_wallet_balance(request: web.Request):
    try:
        auth_token = await auth_token_helper(request, WALLET_BALANCE_SCOPE)
        balance = await request.app[TransferLedgerAppKey].get_balance(auth_token.subject)
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_wallet_balance")
    return web.json_response(balance)


def _require_any_scope(auth_token: AuthToken, scopes: Sequence[str]) -> None:
    if not any(auth_token.claims.has_scope(scope) for scope in scopes):
        raise AuthenticationException.insufficient_scope(" or ".join(scopes))


def _query_int(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise LedgerError.invalid_request(f"{name} must be an integer") from e


def _resolution(user_id: str, resolved: Dict[str, Any]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"user_id": user_id}
    body.update({field: resolved.get(field) for field in RESOLVE_FIELDS})
    return body


async def handle_wallet_transactions(request: web.Request):
    try:
        auth_token = await auth_token_helper(request, WALLET_BALANCE_SCOPE)
        limit = min(max(_query_int(request, "limit", DEFAULT_HISTORY_LIMIT), 1), MAX_HISTORY_LIMIT)
        offset = max(_query_int(request, "offset", 0), 0)
        history = await request.app[TransferLedgerAppKey].get_transactions(
            auth_token.subject, limit=limit, offset=offset
        )
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_wallet_transactions")

    transactions = history.get("transactions") or []
    total = history.get("total", len(transactions))
    return web.json_response(
        {
            "transactions": transactions,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(transactions) < total,
            },
        }
    )


async def handle_wallet_verification(request: web.Request):
    try:
        auth_token = await auth_token_helper(request)
        status = await request.app[TransferLedgerAppKey].get_verification_status(
            auth_token.subject
        )
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_wallet_verification")
    return web.json_response({field: status.get(field) for field in VERIFICATION_FIELDS})


async def handle_wallet_resolve(request: web.Request):
    user_id = request.match_info["user_id"]
    try:
        auth_token = await auth_token_helper(request)
        _require_any_scope(auth_token, RESOLVE_SCOPES)
        resolved = await request.app[TransferLedgerAppKey].resolve_user(
            user_id, auth_token.subject
        )
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_wallet_resolve")
    return web.json_response(_resolution(user_id, resolved))


async def handle_wallet_resolve_batch(request: web.Request):
    try:
        auth_token = await auth_token_helper(request)
        _require_any_scope(auth_token, RESOLVE_SCOPES)
        body: ResolveBatchRequest = await _read_model(request, ResolveBatchRequest)
        if len(body.user_ids) > MAX_BATCH_RESOLVE:
            return json_error(
                400, "too_many_users", f"Maximum {MAX_BATCH_RESOLVE} users per batch request"
            )

        ledger = request.app[TransferLedgerAppKey]
        room_directory = request.app[RoomDirectoryAppKey]

        async def resolve_one(user_id: str) -> Dict[str, Any]:
            if body.room_id and not await room_directory.users_in_room(
                auth_token.subject, user_id, body.room_id
            ):
                return {
                    "user_id": user_id,
                    "error": {"code": "FORBIDDEN", "message": "Users do not share a room"},
                }
            try:
                resolved = await ledger.resolve_user(user_id, auth_token.subject)
            except LedgerError as e:
                if e.kind is not LedgerErrorKind.REJECTED:
                    raise
                return {
                    "user_id": user_id,
                    "error": {"code": e.code or "NOT_FOUND", "message": e.description},
                }
            return _resolution(user_id, resolved)

        results = await asyncio.gather(*(resolve_one(user_id) for user_id in body.user_ids))
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_wallet_resolve_batch")

    return web.json_response(
        {
            "results": results,
            "resolved_count": len([result for result in results if "error" not in result]),
            "total_count": len(results),
        }
    )


async def handle_room_member_wallets(request: web.Request):
    room_id = request.match_info["room_id"]
    try:
        auth_token = await auth_token_helper(request)
        members = await request.app[RoomDirectoryAppKey].room_members(room_id)
        if not members:
            return json_error(404, "not_found", "Room not found or empty")
        if auth_token.subject not in members:
            return json_error(403, "forbidden", "Caller is not a member of the room")

        ledger = request.app[TransferLedgerAppKey]

        async def describe(user_id: str) -> Dict[str, Any]:
            try:
                resolved = await ledger.resolve_user(user_id, auth_token.subject)
                verification = await ledger.get_verification_status(user_id)
            except LedgerError as e:
                if e.kind is not LedgerErrorKind.REJECTED:
                    raise
                return {"user_id": user_id, "has_wallet": False, "can_invite": True}
            return {
                "user_id": user_id,
                "has_wallet": True,
                "wallet_id": resolved.get("wallet_id"),
                "verification_level": verification.get("level") or 0,
                "verification_name": verification.get("level_name") or "None",
            }

        described = await asyncio.gather(*(describe(user_id) for user_id in sorted(members)))
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_room_member_wallets")

    return web.json_response(
        {
            "room_id": room_id,
            "member_count": len([member for member in described if member["has_wallet"]]),
            "non_wallet_count": len([member for member in described if not member["has_wallet"]]),
            "members": described,
        }
    )


async def handle_p2p_initiate(request: web.Request):
    try:
        auth_token = await auth_token_helper(request, WALLET_PAY_SCOPE)
        body: InitiateTransferRequest = await _read_model(request, InitiateTransferRequest)

        if body.recipient == auth_token.subject:
            raise LedgerError.invalid_request("Cannot send a transfer to yourself")
        recipient = await request.app[UserStoreAppKey].find(body.recipient)
        if recipient is None:
            return json_error(404, "RECIPIENT_NO_WALLET", "Recipient does not have a wallet")

        if body.room_id:
            room_directory = request.app[RoomDirectoryAppKey]
            if not await room_directory.users_in_room(
                auth_token.subject, recipient.subject, body.room_id
            ):
                return json_error(403, "forbidden", "Both parties must be members of the room")

        transfer = await request.app[TransferLedgerAppKey].initiate(
            auth_token.subject,
            body.idempotency_key,
            auth_token.user.wallet_id,
            recipient.wallet_id,
            body.amount,
            body.currency.upper(),
            room_id=body.room_id,
            note=body.note,
        )
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_p2p_initiate")

    response = _transfer_body(transfer)
    if body.room_id:
        response["event_id"] = await request.app[EventPublisherAppKey].publish(
            body.room_id,
            P2P_TRANSFER_EVENT,
            p2p_transfer_content(transfer, auth_token.subject, recipient.subject),
        )
    return web.json_response(response, status=201)


async def handle_p2p_confirm(request: web.Request):
    transfer_id = request.match_info["transfer_id"]
    try:
        auth_token = await auth_token_helper(request, WALLET_PAY_SCOPE)
        body: ConfirmTransferRequest = await _read_model(request, ConfirmTransferRequest)
        transfer = await request.app[TransferLedgerAppKey].confirm(
            transfer_id,
            body.auth_proof.root,
            auth_token.subject,
            idempotency_key=body.idempotency_key,
        )
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_p2p_confirm")

    if transfer.status == COMPLETED:
        await _announce_status(request, transfer, completed_at=transfer.completed_at)
    return web.json_response(_transfer_body(transfer))


async def handle_p2p_accept(request: web.Request):
    transfer_id = request.match_info["transfer_id"]
    try:
        auth_token = await auth_token_helper(request)
        transfer = await request.app[TransferLedgerAppKey].accept(transfer_id, auth_token.subject)
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_p2p_accept")

    await _announce_status(request, transfer, completed_at=transfer.completed_at)
    return web.json_response(_transfer_body(transfer))


async def handle_p2p_reject(request: web.Request):
    transfer_id = request.match_info["transfer_id"]
    try:
        auth_token = await auth_token_helper(request)
        body: RejectTransferRequest = await _read_model(
            request, RejectTransferRequest, allow_empty=True
        )
        transfer = await request.app[TransferLedgerAppKey].reject(
            transfer_id, auth_token.subject, body.reason
        )
    except AuthenticationException as e:
        return e.to_response()
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        return await unexpected_error_response(request, e, "handle_p2p_reject")

    refund_expected_at = (datetime.now(timezone.utc) + REFUND_DELAY).isoformat()
    if transfer.status == REJECTED:
        await _announce_status(
            request, transfer, rejected_at=transfer.rejected_at, refund_initiated=True
        )
    response = _transfer_body(transfer)
    response.update({"refund_initiated": True, "refund_expected_at": refund_expected_at})
    return web.json_response(response)
