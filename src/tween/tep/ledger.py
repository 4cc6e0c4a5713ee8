"""
Wallet Ledger Client and the P2P Transfer Protocol

The ledger is the system of record for balances and transfers. This module owns only the guards
around transfer transitions:

    pending_confirmation -> pending_recipient_acceptance -> completed
                         \\-> rejected (by the recipient, or by the expiry sweep)

- ``initiate`` claims ``p2p_idempotent:<caller>:<key>`` with ``SET NX`` before calling the ledger,
  so two submissions with the same key can never both reach it
- ``confirm`` claims ``p2p_confirm:<caller>:<transfer>`` when the caller sends an idempotency key
- ``expire_sweep`` claims ``p2p_expired:<transfer>`` so concurrent sweeps reject each transfer once

Every ledger call runs inside the circuit breaker for its operation family. Only outcomes that say
the ledger is unhealthy (5xx, timeouts, connection errors) count as breaker failures; a 4xx is the
ledger answering and leaves the breaker alone.
"""

import asyncio
import json
import logging
from decimal import Decimal
from enum import Enum
from time import time
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from urllib.parse import urlencode

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, model_validator
from typing_extensions import Annotated

from tween.tep.app.metrics import MetricsClient, NoOpMetricsClient
from tween.tep.breaker import (
    BALANCE_BREAKER,
    TRANSFER_BREAKER,
    VERIFICATION_BREAKER,
    BreakerRegistry,
    CircuitOpenError,
)
from tween.tep.cache import normalize_redis_string

logger = logging.getLogger(__name__)

P2P_PATH = "/api/v1/tmcp/transfers/p2p"
WALLETS_PATH = "/api/v1/tmcp/wallets"

PENDING_CONFIRMATION = "pending_confirmation"
PENDING_RECIPIENT_ACCEPTANCE = "pending_recipient_acceptance"
COMPLETED = "completed"
REJECTED = "rejected"
TERMINAL_STATUSES = frozenset({COMPLETED, REJECTED})

SYSTEM_ACTOR = "system"
EXPIRY_REASON = "system_expiry"
GUARD_PENDING = "pending"


def initiate_guard_key(caller_id: str, idempotency_key: str) -> str:
    return f"p2p_idempotent:{caller_id}:{idempotency_key}"


def confirm_guard_key(caller_id: str, transfer_id: str) -> str:
    return f"p2p_confirm:{caller_id}:{transfer_id}"


def expiry_marker_key(transfer_id: str) -> str:
    return f"p2p_expired:{transfer_id}"


class LedgerErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    DUPLICATE_REQUEST = "duplicate_request"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REJECTED = "rejected"
    SERVER_ERROR = "server_error"


class LedgerError(Exception):
    """
    A transfer operation failed.

    ``sent`` is False when the request provably never reached the ledger (invalid input, an open
    breaker, a duplicate). ``code`` and ``status`` carry the ledger's own answer for ``rejected``.
    """

    def __init__(
        self,
        kind: LedgerErrorKind,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        sent: bool = True,
        transfer_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.code = code
        self.sent = sent
        self.transfer_id = transfer_id
        self.retry_after = retry_after

    @property
    def description(self) -> str:
        return str(self).split(" ", 1)[-1]

    @staticmethod
    def invalid_request(description: str) -> "LedgerError":
        return LedgerError(
            LedgerErrorKind.INVALID_REQUEST,
            f"error-ledger-1000 {description}",
            status=400,
            sent=False,
        )

    @staticmethod
    def duplicate_request(transfer_id: Optional[str]) -> "LedgerError":
        return LedgerError(
            LedgerErrorKind.DUPLICATE_REQUEST,
            "error-ledger-1001 Request with this idempotency key was already processed",
            status=409,
            sent=False,
            transfer_id=transfer_id,
        )

    @staticmethod
    def unavailable(description: str) -> "LedgerError":
        return LedgerError(
            LedgerErrorKind.SERVICE_UNAVAILABLE,
            f"error-ledger-1002 Wallet service unavailable ({description})",
            status=503,
        )

    @staticmethod
    def circuit_open(error: CircuitOpenError) -> "LedgerError":
        return LedgerError(
            LedgerErrorKind.SERVICE_UNAVAILABLE,
            f"error-ledger-1003 Wallet service temporarily unavailable ({error.name} circuit open)",
            status=503,
            sent=False,
            retry_after=error.retry_after,
        )

    @staticmethod
    def rejected(status: int, code: Optional[str], description: str) -> "LedgerError":
        return LedgerError(
            LedgerErrorKind.REJECTED,
            f"error-ledger-1004 {description}",
            status=status,
            code=code,
        )

    @staticmethod
    def server_error(description: str) -> "LedgerError":
        return LedgerError(
            LedgerErrorKind.SERVER_ERROR,
            f"error-ledger-1005 {description}",
            status=500,
        )


def counts_as_ledger_failure(error: BaseException) -> bool:
    """Breaker predicate: a ledger that answered with a 4xx is healthy."""
    return not (isinstance(error, LedgerError) and error.kind is LedgerErrorKind.REJECTED)


class Transfer(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    transfer_id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    sender_wallet_id: Optional[str] = None
    recipient_wallet_id: Optional[str] = None
    room_id: Optional[str] = None
    note: Optional[str] = None
    recipient_acceptance_required: Optional[bool] = None
    expires_at: Optional[str] = None
    completed_at: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None


class BiometricProof(BaseModel):
    method: Literal["biometric"]
    signature: str
    device_id: str
    timestamp: Union[int, str]


class PinProof(BaseModel):
    method: Literal["pin"]
    hashed_pin: str
    device_id: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None


class OtpProof(BaseModel):
    method: Literal["otp"]
    otp_code: str
    timestamp: Optional[Union[int, str]] = None


AuthProof = Annotated[Union[BiometricProof, PinProof, OtpProof], Field(discriminator="method")]


class AuthProofPayload(RootModel[AuthProof]):
    """
    Proof of authorization for a confirm call.

    Accepts the flat form ``{"method": "pin", "hashed_pin": ...}`` as well as the nested form
    ``{"method": "pin", "proof": {"hashed_pin": ...}}``.
    """

    @model_validator(mode="before")
    @classmethod
    def flatten_proof(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("proof"), dict):
            flattened = {key: value for key, value in data.items() if key != "proof"}
            flattened.update(data["proof"])
            return flattened
        return data


class LedgerHttpClient:
    """JSON-over-HTTP access to the ledger, translating responses into ``LedgerError`` kinds."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        base_url: str,
        api_key: str,
        timeout: float = 30,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.http_session = http_session
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.metrics_client = metrics_client or NoOpMetricsClient()

    async def request(
        self,
        method: str,
        path: str,
        actor: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        bearer: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {bearer or self._api_key}",
            "Accept": "application/json",
        }
        if actor:
            headers["X-TMCP-User-ID"] = actor
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        start_time = time()
        status = 0
        try:
            async with self.http_session.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                headers=headers,
                timeout=self.timeout,
            ) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Ledger %s %s failed: %s", method, path, type(e).__name__)
            raise LedgerError.unavailable(type(e).__name__) from e
        finally:
            self.metrics_client.timer(
                "tep.ledger.request.time", time() - start_time, tag_dict={"method": method}
            )
            self.metrics_client.increment(
                "tep.ledger.request.count", 1, tag_dict={"method": method, "status": status}
            )

        if status >= 500:
            logger.warning("Ledger %s %s returned HTTP %d", method, path, status)
            raise LedgerError.unavailable(f"HTTP {status}")
        if status >= 400:
            code, message = _error_details(text, status)
            raise LedgerError.rejected(status, code, message)

        try:
            payload = json.loads(text)
        except ValueError as e:
            raise LedgerError.server_error("Invalid wallet service response") from e
        if not isinstance(payload, dict):
            raise LedgerError.server_error("Invalid wallet service response")
        return payload


def _error_details(text: str, status: int) -> Tuple[Optional[str], str]:
    try:
        payload = json.loads(text)
    except ValueError:
        return None, f"Wallet service rejected the request (HTTP {status})"
    if not isinstance(payload, dict):
        return None, f"Wallet service rejected the request (HTTP {status})"

    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("code"), error.get("message") or f"HTTP {status}"
    message = payload.get("error_description") or payload.get("message") or f"HTTP {status}"
    return (error if isinstance(error, str) else None), message


class TransferLedgerClient:
    def __init__(
        self,
        ledger: LedgerHttpClient,
        breakers: BreakerRegistry,
        redis_client,
        initiate_ttl: int = 86400,
        confirm_ttl: int = 300,
        expiry_marker_ttl: int = 86400,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.ledger = ledger
        self.breakers = breakers
        self.redis_client = redis_client
        self.initiate_ttl = initiate_ttl
        self.confirm_ttl = confirm_ttl
        self.expiry_marker_ttl = expiry_marker_ttl
        self.metrics_client = metrics_client or NoOpMetricsClient()

    async def initiate(
        self,
        caller_id: str,
        idempotency_key: str,
        sender_wallet_id: str,
        recipient_wallet_id: str,
        amount: Decimal,
        currency: str,
        room_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transfer:
        if not idempotency_key:
            raise LedgerError.invalid_request("idempotency_key is required")
        if amount <= 0:
            raise LedgerError.invalid_request("amount must be positive")

        guard = initiate_guard_key(caller_id, idempotency_key)
        acquired = await self.redis_client.set(guard, GUARD_PENDING, nx=True, ex=self.initiate_ttl)
        if not acquired:
            existing = await self.redis_client.get(guard)
            transfer_id = normalize_redis_string(existing) if existing is not None else None
            self.metrics_client.increment("tep.transfer.duplicate", 1, tag_dict={"operation": "initiate"})
            logger.info("Duplicate initiate from %s with key %s", caller_id, idempotency_key)
            raise LedgerError.duplicate_request(None if transfer_id == GUARD_PENDING else transfer_id)

        body = {
            "sender_wallet_id": sender_wallet_id,
            "recipient_wallet_id": recipient_wallet_id,
            "amount": str(amount),
            "currency": currency,
            "room_id": room_id,
            "note": note,
        }
        try:
            payload = await self._call(
                TRANSFER_BREAKER,
                "POST",
                f"{P2P_PATH}/initiate",
                actor=caller_id,
                body=body,
                idempotency_key=idempotency_key,
            )
            transfer = _transfer(payload)
        except LedgerError as e:
            if not e.sent or e.kind is LedgerErrorKind.REJECTED:
                await self.redis_client.delete(guard)
            raise

        await self.redis_client.set(guard, transfer.transfer_id, ex=self.initiate_ttl)
        self.metrics_client.increment("tep.transfer.initiated", 1, tag_dict={"currency": currency})
        return transfer

    async def confirm(
        self,
        transfer_id: str,
        auth_proof: AuthProof,
        actor: str,
        idempotency_key: Optional[str] = None,
    ) -> Transfer:
        guard: Optional[str] = None
        if idempotency_key:
            guard = confirm_guard_key(actor, transfer_id)
            acquired = await self.redis_client.set(
                guard, idempotency_key, nx=True, ex=self.confirm_ttl
            )
            if not acquired:
                self.metrics_client.increment("tep.transfer.duplicate", 1, tag_dict={"operation": "confirm"})
                raise LedgerError.duplicate_request(transfer_id)

        try:
            payload = await self._call(
                TRANSFER_BREAKER,
                "POST",
                f"{P2P_PATH}/{transfer_id}/confirm",
                actor=actor,
                body={"auth_proof": auth_proof.model_dump(mode="json", exclude_none=True)},
                idempotency_key=idempotency_key,
            )
            transfer = _transfer(payload)
        except LedgerError as e:
            if guard is not None and (not e.sent or e.kind is LedgerErrorKind.REJECTED):
                await self.redis_client.delete(guard)
            raise

        if transfer.status not in (COMPLETED, PENDING_RECIPIENT_ACCEPTANCE):
            logger.error(
                "Confirmation of %s left it in %s", transfer_id, transfer.status
            )
            raise LedgerError.server_error(
                f"Confirmation did not advance transfer {transfer_id} (status {transfer.status})"
            )
        return transfer

    async def accept(self, transfer_id: str, actor: str) -> Transfer:
        payload = await self._call(
            TRANSFER_BREAKER, "POST", f"{P2P_PATH}/{transfer_id}/accept", actor=actor, body={}
        )
        return _transfer(payload)

    async def reject(
        self, transfer_id: str, actor: str, reason: Optional[str] = None
    ) -> Transfer:
        body = {"reason": reason} if reason else {}
        payload = await self._call(
            TRANSFER_BREAKER, "POST", f"{P2P_PATH}/{transfer_id}/reject", actor=actor, body=body
        )
        return _transfer(payload)

    async def list_expired(self) -> List[Transfer]:
        payload = await self._call(
            TRANSFER_BREAKER, "GET", f"{P2P_PATH}/expired", actor=SYSTEM_ACTOR
        )
        transfers = payload.get("transfers") or []
        if not isinstance(transfers, list):
            raise LedgerError.server_error("Invalid wallet service response")
        return [_transfer(item) for item in transfers]

    async def expire_sweep(self) -> List[Transfer]:
        """
        Reject every pending transfer past its confirmation deadline.

        Returns the transfers this sweep rejected. A transfer another sweep already claimed, or
        that the ledger reports as settled, is skipped. Failures on one transfer are logged and do
        not stop the sweep.
        """
        rejected: List[Transfer] = []
        for transfer in await self.list_expired():
            if transfer.status in TERMINAL_STATUSES:
                continue

            marker = expiry_marker_key(transfer.transfer_id)
            claimed = await self.redis_client.set(marker, "1", nx=True, ex=self.expiry_marker_ttl)
            if not claimed:
                continue

            try:
                result = await self.reject(transfer.transfer_id, SYSTEM_ACTOR, EXPIRY_REASON)
            except LedgerError as e:
                if e.kind is LedgerErrorKind.REJECTED:
                    logger.info(
                        "Transfer %s was settled before expiry (%s)", transfer.transfer_id, e.code
                    )
                    continue
                await self.redis_client.delete(marker)
                logger.error("Failed to expire transfer %s: %s", transfer.transfer_id, e)
                continue

            if result.status == REJECTED:
                rejected.append(result)

        self.metrics_client.increment("tep.transfer.expired", len(rejected))
        return rejected

    async def get_balance(self, user_id: str) -> Dict[str, Any]:
        return await self._call(
            BALANCE_BREAKER, "GET", f"{WALLETS_PATH}/{user_id}/balance", actor=user_id
        )

    async def get_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        return await self._call(
            BALANCE_BREAKER,
            "GET",
            f"{WALLETS_PATH}/{user_id}/transactions?{urlencode({'limit': limit, 'offset': offset})}",
            actor=user_id,
        )

    async def get_verification_status(self, user_id: str) -> Dict[str, Any]:
        return await self._call(
            VERIFICATION_BREAKER, "GET", f"{WALLETS_PATH}/{user_id}/verification", actor=user_id
        )

    async def resolve_user(self, user_id: str, actor: str) -> Dict[str, Any]:
        """Look up the wallet behind a Matrix user id on behalf of ``actor``."""
        return await self._call(
            VERIFICATION_BREAKER, "GET", f"{WALLETS_PATH}/resolve/{user_id}", actor=actor
        )

    async def register_wallet(self, user_id: str, bearer: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(
            VERIFICATION_BREAKER,
            "POST",
            f"{WALLETS_PATH}/register",
            actor=user_id,
            body={"user_id": user_id, "currency": "USD"},
            bearer=bearer,
        )

    async def _call(self, family: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return await self.breakers.get(family).call(self.ledger.request, method, path, **kwargs)
        except CircuitOpenError as e:
            raise LedgerError.circuit_open(e) from e


def _transfer(payload: Dict[str, Any]) -> Transfer:
    data = payload.get("transfer", payload)
    try:
        return Transfer.model_validate(data)
    except ValidationError as e:
        raise LedgerError.server_error("Invalid wallet service response") from e
