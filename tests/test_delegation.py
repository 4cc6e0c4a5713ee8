"""
Tests for the delegated-authentication service client against a fake DAS.
"""

import aiohttp
import pytest
import pytest_asyncio

from tween.tep.delegation import (
    DELEGATED_FROM,
    DEVICE_CODE_GRANT,
    SERVICE_TOKEN_CACHE_KEY,
    UPSTREAM_FALLBACK_LIFETIME,
    DelegationBroker,
    DelegationError,
    DelegationErrorKind,
)

from tests.test_helpers import DAS_CLIENT_ID, DAS_CLIENT_SECRET, FakeDas, serve

ALICE = "@alice:example.org"


@pytest.fixture
def das():
    fake = FakeDas()
    fake.add_user("das-alice", ALICE, display_name="Alice")
    return fake


@pytest_asyncio.fixture
async def das_server(das):
    server = await serve(das.app())
    yield server
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    session = aiohttp.ClientSession()
    yield session
    await session.close()


def make_broker(server, http_session, redis_client=None, metrics_client=None, secret=DAS_CLIENT_SECRET):
    return DelegationBroker(
        http_session,
        DAS_CLIENT_ID,
        secret,
        str(server.make_url("/oauth2/token")),
        str(server.make_url("/oauth2/introspect")),
        str(server.make_url("/oauth2/revoke")),
        redis_client=redis_client,
        metrics_client=metrics_client,
    )


class TestIntrospection:
    """Introspection answers and their translation."""

    async def test_active_token(self, das_server, http_session):
        broker = make_broker(das_server, http_session)

        introspection = await broker.introspect("das-alice")

        assert introspection.active is True
        assert introspection.sub == ALICE
        assert introspection.session_id == "das-session-1"
        assert introspection.display_name == "Alice"

    async def test_inactive_token_is_not_an_error(self, das_server, http_session):
        broker = make_broker(das_server, http_session)

        introspection = await broker.introspect("unknown-token")

        assert introspection.active is False

    async def test_validate_for_session_requires_active(self, das_server, http_session):
        broker = make_broker(das_server, http_session)

        with pytest.raises(DelegationError) as exc_info:
            await broker.validate_for_session("unknown-token")
        assert exc_info.value.kind is DelegationErrorKind.INVALID_TOKEN

    async def test_validate_for_session_rejects_expired(self, das, das_server, http_session):
        das.add_user("das-stale", ALICE, exp=1)
        broker = make_broker(das_server, http_session)

        with pytest.raises(DelegationError) as exc_info:
            await broker.validate_for_session("das-stale")
        assert exc_info.value.kind is DelegationErrorKind.INVALID_TOKEN

    async def test_rejected_client_credentials(self, das_server, http_session):
        broker = make_broker(das_server, http_session, secret="wrong-secret-value")

        with pytest.raises(DelegationError) as exc_info:
            await broker.introspect("das-alice")

        assert exc_info.value.kind is DelegationErrorKind.INVALID_CREDENTIALS
        assert "wrong-secret-value" not in str(exc_info.value)

    async def test_unparseable_error_body(self, das, das_server, http_session):
        das.introspect_status = 502
        broker = make_broker(das_server, http_session)

        with pytest.raises(DelegationError) as exc_info:
            await broker.introspect("das-alice")

        assert exc_info.value.kind is DelegationErrorKind.BROKER_ERROR
        assert exc_info.value.status == 502

    async def test_unreachable_service(self, http_session, unused_tcp_port):
        broker = DelegationBroker(
            http_session,
            DAS_CLIENT_ID,
            DAS_CLIENT_SECRET,
            f"http://127.0.0.1:{unused_tcp_port}/oauth2/token",
            f"http://127.0.0.1:{unused_tcp_port}/oauth2/introspect",
            f"http://127.0.0.1:{unused_tcp_port}/oauth2/revoke",
        )

        with pytest.raises(DelegationError) as exc_info:
            await broker.introspect("das-alice")
        assert exc_info.value.kind is DelegationErrorKind.UNAVAILABLE

    async def test_request_metrics(self, das_server, http_session, metrics_client):
        broker = make_broker(das_server, http_session, metrics_client=metrics_client)

        await broker.introspect("das-alice")

        assert metrics_client.tags("tep.das.request.count") == [
            {"operation": "introspect", "outcome": "success"}
        ]
        assert metrics_client.timers[0][0] == "tep.das.request.time"


class TestServiceToken:
    """The client credentials token is cached in Redis until close to expiry."""

    async def test_cached_between_calls(self, das, das_server, http_session, fake_redis_client):
        broker = make_broker(das_server, http_session, redis_client=fake_redis_client)

        first = await broker.service_token()
        second = await broker.service_token()

        assert first == second == "service-token-1"
        assert das.service_token_issued == 1
        assert 0 < await fake_redis_client.ttl(SERVICE_TOKEN_CACHE_KEY) <= 3600 - 60

    async def test_without_cache_always_fetches(self, das, das_server, http_session):
        broker = make_broker(das_server, http_session)

        await broker.service_token()
        await broker.service_token()

        assert das.service_token_issued == 2


class TestDelegatedSession:
    """Exchanging a live DAS token for the session a TEP token is minted from."""

    async def test_exchange(self, das_server, http_session):
        broker = make_broker(das_server, http_session)
        introspection = await broker.introspect("das-alice")

        session = await broker.exchange_for_delegated_session("das-alice", introspection)

        assert session.subject == ALICE
        assert session.wallet_id == "tw__alice_example.org"
        assert session.session_id.startswith("sess_")
        assert session.upstream.refreshed is True
        assert session.upstream.access_token == "upstream-das-alice"
        assert session.session_ref.device_id == "DEVICE1"
        assert session.user_context.display_name == "Alice"
        assert DELEGATED_FROM == "das_session"

    async def test_refused_exchange_reuses_presented_token(self, das, das_server, http_session):
        das.exchange_status = 500
        broker = make_broker(das_server, http_session)
        introspection = await broker.introspect("das-alice")

        session = await broker.exchange_for_delegated_session("das-alice", introspection)

        assert session.upstream.refreshed is False
        assert session.upstream.access_token == "das-alice"
        assert session.upstream.expires_in == UPSTREAM_FALLBACK_LIFETIME

    async def test_inactive_introspection_is_refused(self, das_server, http_session):
        broker = make_broker(das_server, http_session)
        introspection = await broker.introspect("unknown-token")

        with pytest.raises(DelegationError) as exc_info:
            await broker.exchange_for_delegated_session("unknown-token", introspection)
        assert exc_info.value.kind is DelegationErrorKind.INVALID_TOKEN


class TestDeviceFlow:
    """RFC 8628 device authorization and polling."""

    async def test_device_authorization(self, das, das_server, http_session):
        broker = make_broker(das_server, http_session)

        authorization = await broker.device_authorization(["openid"])

        assert broker.device_authorization_url == str(das_server.make_url("/oauth2/device/authorization"))
        assert authorization.user_code == "WDJB-MJHT"
        assert authorization.interval == 5
        assert das.calls[-1]["scope"] == "openid"

    @pytest.mark.parametrize("outcome", ["authorization_pending", "slow_down", "expired_token", "access_denied"])
    async def test_polling_errors_keep_their_code(self, das, das_server, http_session, outcome):
        broker = make_broker(das_server, http_session)
        authorization = await broker.device_authorization(["openid"])
        das.devices[authorization.device_code] = outcome

        with pytest.raises(DelegationError) as exc_info:
            await broker.poll_device_token(authorization.device_code)

        assert exc_info.value.kind is DelegationErrorKind.DEVICE_FLOW
        assert exc_info.value.error == outcome

    async def test_approved(self, das, das_server, http_session):
        broker = make_broker(das_server, http_session)
        authorization = await broker.device_authorization(["openid"])
        das.devices[authorization.device_code] = "das-alice"

        token = await broker.poll_device_token(authorization.device_code)

        assert token.access_token == "das-alice"
        assert token.refresh_token == "refresh-das-alice"
        assert das.calls[-1]["grant_type"] == DEVICE_CODE_GRANT

    async def test_unknown_device_code_is_an_invalid_token(self, das_server, http_session):
        broker = make_broker(das_server, http_session)

        with pytest.raises(DelegationError) as exc_info:
            await broker.poll_device_token("never-issued")

        assert exc_info.value.kind is DelegationErrorKind.INVALID_TOKEN


class TestRevocation:
    """Revocation is best effort."""

    async def test_revoke_forwards_token(self, das, das_server, http_session):
        broker = make_broker(das_server, http_session)

        assert await broker.revoke("das-alice", "access_token") is True
        assert das.revoked == ["das-alice"]
        assert das.calls[-1]["token_type_hint"] == "access_token"

    async def test_revoke_failure_returns_false(self, das_server, http_session):
        broker = make_broker(das_server, http_session, secret="wrong-secret-value")

        assert await broker.revoke("das-alice") is False
