"""
Common testing utilities for TEP broker tests.

Provides in-memory stores, a recording metrics client, and small fake upstream services (the DAS,
the ledger, the homeserver) served by aiohttp's TestServer so the real HTTP clients can be
exercised end to end.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from aiohttp import web
from aiohttp import test_utils

from tween.tep.app.metrics import MetricsClient
from tween.tep.identity import split_subject, wallet_id_for
from tween.tep.rooms import EventPublisher, RoomDirectory
from tween.tep.store import (
    AppRecord,
    AppRegistry,
    ApprovalEntry,
    ApprovalStore,
    UserRecord,
    UserStore,
)

DAS_CLIENT_ID = "tep-broker"
DAS_CLIENT_SECRET = "das-secret-value"
LEDGER_API_KEY = "ledger-api-key"
TEST_ISSUER = "https://tmcp.test"


class MockMetricsClient(MetricsClient):
    """Metrics client that keeps everything it was given."""

    def __init__(self):
        self.increments: List[Tuple[str, Any, Dict[str, Any]]] = []
        self.gauges: Dict[str, Any] = {}
        self.timers: List[Tuple[str, Any, Dict[str, Any]]] = []

    def increment(self, name, value=1, tag_dict=None):
        self.increments.append((name, value, tag_dict or {}))

    def gauge(self, name, value, tag_dict=None):
        self.gauges[name] = value

    def timer(self, name, value, tag_dict=None):
        self.timers.append((name, value, tag_dict or {}))

    async def connect(self):
        pass

    async def close(self):
        pass

    def count(self, name: str) -> int:
        return sum(value for metric, value, _ in self.increments if metric == name)

    def tags(self, name: str) -> List[Dict[str, Any]]:
        return [tags for metric, _, tags in self.increments if metric == name]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def user_record(subject: str) -> UserRecord:
    username, homeserver = split_subject(subject)
    return UserRecord(
        subject=subject,
        username=username,
        homeserver=homeserver,
        wallet_id=wallet_id_for(subject),
    )


class InMemoryUserStore(UserStore):
    def __init__(self, subjects: Iterable[str] = ()):
        self.users: Dict[str, UserRecord] = {subject: user_record(subject) for subject in subjects}

    async def find_or_create(self, subject: str) -> UserRecord:
        if subject not in self.users:
            self.users[subject] = user_record(subject)
        return self.users[subject]

    async def find(self, subject: str) -> Optional[UserRecord]:
        return self.users.get(subject)


class InMemoryApprovalStore(ApprovalStore):
    def __init__(self):
        self.rows: List[Tuple[str, str, ApprovalEntry]] = []

    async def approved_scopes(self, subject: str, app_id: str, scopes: Sequence[str]) -> Set[str]:
        return {
            entry.scope
            for row_subject, row_app, entry in self.rows
            if row_subject == subject and row_app == app_id and entry.scope in scopes
        }

    async def record_approvals(
        self, subject: str, app_id: str, scopes: Sequence[str], approval_method: str
    ) -> None:
        now = datetime.now(timezone.utc)
        for scope in scopes:
            self.rows.append((subject, app_id, ApprovalEntry(scope, now, approval_method)))

    async def history(
        self, subject: str, app_id: str, scopes: Sequence[str], limit: int = 10
    ) -> List[ApprovalEntry]:
        entries = [
            entry
            for row_subject, row_app, entry in self.rows
            if row_subject == subject and row_app == app_id and entry.scope in scopes
        ]
        entries.sort(key=lambda entry: entry.approved_at, reverse=True)
        return entries[:limit]


class InMemoryAppRegistry(AppRegistry):
    def __init__(self, apps: Iterable[AppRecord] = ()):
        self.apps = {app.app_id: app for app in apps}

    async def find_app(self, app_id: str) -> Optional[AppRecord]:
        return self.apps.get(app_id)


class StaticRoomDirectory(RoomDirectory):
    def __init__(self, rooms: Optional[Dict[str, Set[str]]] = None):
        self.rooms = rooms or {}

    async def user_in_room(self, user_id: str, room_id: str) -> bool:
        return user_id in self.rooms.get(room_id, set())

    async def room_members(self, room_id: str) -> Set[str]:
        return set(self.rooms.get(room_id, set()))


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def publish(self, room_id: str, event_type: str, content: Dict[str, Any]) -> Optional[str]:
        self.events.append((room_id, event_type, content))
        return f"$event{len(self.events)}"


async def serve(app: web.Application) -> test_utils.TestServer:
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


class FakeDas:
    """
    A delegated-authentication service. ``tokens`` maps a presented token to its introspection
    payload; tokens missing from it introspect as inactive.

    ``devices`` maps each device code it handed out to an RFC 8628 polling error, or to the token
    issued once the user approved it.
    """

    def __init__(self):
        self.tokens: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Dict[str, str]] = []
        self.introspect_status = 200
        self.exchange_status = 200
        self.service_token_issued = 0
        self.revoked: List[str] = []
        self.devices: Dict[str, str] = {}

    def add_user(self, token: str, subject: str, **extra: Any) -> None:
        self.tokens[token] = {
            "active": True,
            "sub": subject,
            "scope": "openid",
            "exp": int(datetime.now(timezone.utc).timestamp()) + 3600,
            "username": split_subject(subject)[0],
            "device_id": "DEVICE1",
            "sid": "das-session-1",
            **extra,
        }

    def app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.post("/oauth2/token", self.handle_token),
                web.post("/oauth2/introspect", self.handle_introspect),
                web.post("/oauth2/revoke", self.handle_revoke),
                web.post("/oauth2/device/authorization", self.handle_device_authorization),
            ]
        )
        return app

    async def _form(self, request: web.Request) -> Optional[Dict[str, str]]:
        form = {key: str(value) for key, value in (await request.post()).items()}
        self.calls.append(form)
        if form.get("client_id") != DAS_CLIENT_ID or form.get("client_secret") != DAS_CLIENT_SECRET:
            return None
        return form

    async def handle_token(self, request: web.Request):
        form = await self._form(request)
        if form is None:
            return web.json_response({"error": "invalid_client"}, status=401)
        if form.get("grant_type") == "client_credentials":
            self.service_token_issued += 1
            return web.json_response(
                {
                    "access_token": f"service-token-{self.service_token_issued}",
                    "token_type": "Bearer",
                    "expires_in": 3600,
                }
            )
        if form.get("grant_type") == "urn:ietf:params:oauth:grant-type:device_code":
            return self._device_token(form.get("device_code", ""))
        if self.exchange_status != 200:
            return web.json_response({"error": "server_error"}, status=self.exchange_status)
        if form.get("subject_token") not in self.tokens:
            return web.json_response({"error": "invalid_grant"}, status=400)
        return web.json_response(
            {"access_token": f"upstream-{form['subject_token']}", "expires_in": 600}
        )

    async def handle_introspect(self, request: web.Request):
        form = await self._form(request)
        if form is None:
            return web.json_response({"error": "invalid_client"}, status=401)
        if self.introspect_status != 200:
            return web.Response(status=self.introspect_status, text="upstream failure")
        return web.json_response(self.tokens.get(form.get("token"), {"active": False}))

    async def handle_revoke(self, request: web.Request):
        form = await self._form(request)
        if form is None:
            return web.json_response({"error": "invalid_client"}, status=401)
        self.revoked.append(form.get("token"))
        return web.Response(status=200)

    async def handle_device_authorization(self, request: web.Request):
        form = await self._form(request)
        if form is None:
            return web.json_response({"error": "invalid_client"}, status=401)
        device_code = f"device-code-{len(self.devices) + 1}"
        self.devices[device_code] = "authorization_pending"
        return web.json_response(
            {
                "device_code": device_code,
                "user_code": "WDJB-MJHT",
                "verification_uri": "https://das.test/device",
                "expires_in": 900,
                "interval": 5,
            }
        )

    def _device_token(self, device_code: str) -> web.Response:
        outcome = self.devices.get(device_code)
        if outcome is None:
            return web.json_response({"error": "invalid_grant"}, status=400)
        if outcome in ("authorization_pending", "slow_down", "expired_token", "access_denied"):
            return web.json_response({"error": outcome}, status=400)
        return web.json_response(
            {
                "access_token": outcome,
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": f"refresh-{outcome}",
                "scope": "urn:matrix:org.matrix.msc2967.client:api:*",
            }
        )


class FakeLedger:
    """
    A wallet ledger holding transfers in memory.

    Setting ``fail_status`` makes every call answer with that status, which is how tests simulate
    an unhealthy or refusing ledger.
    """

    def __init__(self):
        self.transfers: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, str, Dict[str, str]]] = []
        self.registered: List[str] = []
        self.fail_status: Optional[int] = None
        self.recipient_acceptance_required = False
        self.expired_ids: List[str] = []
        self.history: List[Dict[str, Any]] = []
        self.unregistered: Set[str] = set()

    def app(self) -> web.Application:
        prefix = "/api/v1/tmcp/transfers/p2p"
        app = web.Application()
        app.add_routes(
            [
                web.post(f"{prefix}/initiate", self.handle_initiate),
                web.get(f"{prefix}/expired", self.handle_expired),
                web.post(f"{prefix}/{{transfer_id}}/confirm", self.handle_confirm),
                web.post(f"{prefix}/{{transfer_id}}/accept", self.handle_accept),
                web.post(f"{prefix}/{{transfer_id}}/reject", self.handle_reject),
                web.get("/api/v1/tmcp/wallets/{user_id}/balance", self.handle_balance),
                web.post("/api/v1/tmcp/wallets/register", self.handle_register),
                web.get(
                    "/api/v1/tmcp/wallets/{user_id}/transactions", self.handle_transactions
                ),
                web.get(
                    "/api/v1/tmcp/wallets/{user_id}/verification", self.handle_verification
                ),
                web.get("/api/v1/tmcp/wallets/resolve/{user_id}", self.handle_resolve),
            ]
        )
        return app

    def _record(self, request: web.Request) -> Optional[web.Response]:
        self.requests.append(
            (
                request.method,
                request.path,
                {
                    "actor": request.headers.get("X-TMCP-User-ID", ""),
                    "authorization": request.headers.get("Authorization", ""),
                    "idempotency_key": request.headers.get("Idempotency-Key", ""),
                },
            )
        )
        if self.fail_status is not None:
            return web.json_response(
                {"error": {"code": "LEDGER_FAILURE", "message": "Ledger refused"}},
                status=self.fail_status,
            )
        return None

    def calls_to(self, suffix: str) -> int:
        return len([path for _, path, _ in self.requests if path.endswith(suffix)])

    def _get(self, request: web.Request) -> Optional[Dict[str, Any]]:
        return self.transfers.get(request.match_info["transfer_id"])

    async def handle_initiate(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        body = await request.json()
        transfer_id = f"p2p_{len(self.transfers) + 1}"
        self.transfers[transfer_id] = {
            "transfer_id": transfer_id,
            "status": "pending_confirmation",
            "amount": body["amount"],
            "currency": body["currency"],
            "sender_wallet_id": body["sender_wallet_id"],
            "recipient_wallet_id": body["recipient_wallet_id"],
            "room_id": body.get("room_id"),
            "note": body.get("note"),
            "recipient_acceptance_required": self.recipient_acceptance_required,
            "expires_at": "2026-10-19T12:05:00Z",
        }
        return web.json_response({"transfer": self.transfers[transfer_id]}, status=201)

    async def handle_confirm(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        transfer = self._get(request)
        if transfer is None:
            return web.json_response(
                {"error": {"code": "TRANSFER_NOT_FOUND", "message": "No such transfer"}}, status=404
            )
        body = await request.json()
        if body.get("auth_proof", {}).get("method") not in ("pin", "biometric", "otp"):
            return web.json_response({"error": "invalid_proof"}, status=400)
        if transfer["recipient_acceptance_required"]:
            transfer["status"] = "pending_recipient_acceptance"
        else:
            transfer["status"] = "completed"
            transfer["completed_at"] = "2026-10-19T12:01:00Z"
        return web.json_response({"transfer": transfer})

    async def handle_accept(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        transfer = self._get(request)
        transfer["status"] = "completed"
        transfer["completed_at"] = "2026-10-19T12:02:00Z"
        return web.json_response({"transfer": transfer})

    async def handle_reject(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        transfer = self._get(request)
        if transfer is None or transfer["status"] in ("completed", "rejected"):
            return web.json_response(
                {"error": {"code": "TRANSFER_SETTLED", "message": "Transfer already settled"}},
                status=409,
            )
        body = await request.json() if request.can_read_body else {}
        transfer["status"] = "rejected"
        transfer["rejected_at"] = "2026-10-19T12:03:00Z"
        transfer["rejection_reason"] = (body or {}).get("reason")
        return web.json_response({"transfer": transfer})

    async def handle_expired(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        return web.json_response(
            {"transfers": [self.transfers[transfer_id] for transfer_id in self.expired_ids]}
        )

    async def handle_balance(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        return web.json_response(
            {
                "wallet_id": wallet_id_for(request.match_info["user_id"]),
                "balance": {"available": "150.00", "pending": "0.00", "currency": "USD"},
            }
        )

    async def handle_register(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        body = await request.json()
        self.registered.append(body["user_id"])
        return web.json_response({"wallet_id": wallet_id_for(body["user_id"])}, status=201)

    async def handle_transactions(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        limit = int(request.query["limit"])
        offset = int(request.query["offset"])
        return web.json_response(
            {
                "transactions": self.history[offset : offset + limit],
                "total": len(self.history),
            }
        )

    async def handle_verification(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        return web.json_response(
            {
                "level": 1,
                "level_name": "basic",
                "verified_at": "2026-01-05T09:00:00Z",
                "limits": {"daily_limit": "500.00", "per_transaction_limit": "100.00"},
                "features": {"p2p_send": True, "p2p_receive": True},
                "can_upgrade": True,
                "next_level": 2,
                "upgrade_requirements": ["government_id"],
            }
        )

    async def handle_resolve(self, request: web.Request):
        failure = self._record(request)
        if failure is not None:
            return failure
        user_id = request.match_info["user_id"]
        if user_id in self.unregistered:
            return web.json_response(
                {"error": {"code": "NO_WALLET", "message": "User has no wallet"}}, status=404
            )
        return web.json_response(
            {
                "user_id": user_id,
                "wallet_id": wallet_id_for(user_id),
                "wallet_status": "active",
                "display_name": split_subject(user_id)[0].title(),
                "payment_enabled": True,
                "verification_level": 1,
                "verification_name": "basic",
                "created_at": "2026-01-05T09:00:00Z",
            }
        )


class FakeHomeserver:
    def __init__(self, rooms: Optional[Dict[str, Set[str]]] = None):
        self.rooms = rooms or {}
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.send_status = 200

    def app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get(
                    "/_matrix/client/v3/rooms/{room_id}/joined_members", self.handle_joined_members
                ),
                web.put(
                    "/_matrix/client/v3/rooms/{room_id}/send/{event_type}/{txn_id}",
                    self.handle_send,
                ),
            ]
        )
        return app

    async def handle_joined_members(self, request: web.Request):
        room_id = request.match_info["room_id"]
        if room_id not in self.rooms:
            return web.json_response({"errcode": "M_FORBIDDEN"}, status=403)
        return web.json_response(
            {"joined": {user_id: {"display_name": None} for user_id in self.rooms[room_id]}}
        )

    async def handle_send(self, request: web.Request):
        if self.send_status != 200:
            return web.json_response({"errcode": "M_UNKNOWN"}, status=self.send_status)
        self.sent.append(
            (request.match_info["room_id"], request.match_info["event_type"], await request.json())
        )
        return web.json_response({"event_id": f"$sent{len(self.sent)}"})
