"""
Tests for consent adjudication and the single-use consent sessions.
"""

import pytest

from tween.tep.consent import (
    USER_CONSENT_METHOD,
    ConsentError,
    ConsentErrorKind,
    ConsentResolver,
    consent_session_key,
)

from tests.test_helpers import InMemoryApprovalStore

ALICE = "@alice:example.org"


@pytest.fixture
def approval_store():
    return InMemoryApprovalStore()


@pytest.fixture
def resolver(approval_store, fake_redis_client, metrics_client):
    return ConsentResolver(approval_store, fake_redis_client, metrics_client=metrics_client)


class TestResolve:
    """Splitting requested scopes into pre-approved and consent-required."""

    async def test_non_sensitive_scopes_are_granted(self, resolver, fake_redis_client):
        decision = await resolver.resolve(ALICE, "ma_demo", ["user:read", "wallet:balance"])

        assert decision.consent_required is False
        assert decision.authorized_scopes == ["user:read", "wallet:balance"]
        assert decision.session_id is None
        assert await fake_redis_client.keys("consent:*") == []

    async def test_unapproved_sensitive_scope_needs_consent(self, resolver, fake_redis_client):
        decision = await resolver.resolve(ALICE, "ma_demo", ["user:read", "wallet:pay"])

        assert decision.consent_required is True
        assert decision.pre_approved_scopes == ["user:read"]
        assert decision.consent_required_scopes == ["wallet:pay"]
        assert decision.session_id
        ttl = await fake_redis_client.ttl(consent_session_key(decision.session_id))
        assert 0 < ttl <= 900

    async def test_prior_approval_is_honoured(self, resolver, approval_store):
        await approval_store.record_approvals(ALICE, "ma_demo", ["wallet:pay"], USER_CONSENT_METHOD)

        decision = await resolver.resolve(ALICE, "ma_demo", ["user:read", "wallet:pay"])

        assert decision.consent_required is False
        assert decision.authorized_scopes == ["user:read", "wallet:pay"]

    async def test_approval_is_per_app(self, resolver, approval_store):
        await approval_store.record_approvals(ALICE, "ma_other", ["wallet:pay"], USER_CONSENT_METHOD)

        decision = await resolver.resolve(ALICE, "ma_demo", ["wallet:pay"])

        assert decision.consent_required is True

    async def test_duplicates_are_collapsed(self, resolver):
        decision = await resolver.resolve(ALICE, "ma_demo", ["user:read", "user:read"])

        assert decision.authorized_scopes == ["user:read"]

    async def test_metrics(self, resolver, metrics_client):
        await resolver.resolve(ALICE, "ma_demo", ["user:read"])
        await resolver.resolve(ALICE, "ma_demo", ["messaging:send"])

        assert metrics_client.tags("tep.consent.resolved") == [
            {"outcome": "approved"},
            {"outcome": "required"},
        ]


class TestSubmission:
    """A consent session is approved or declined exactly once."""

    async def test_approve_records_approvals(self, resolver, approval_store):
        decision = await resolver.resolve(ALICE, "ma_demo", ["user:read", "wallet:pay", "room:invite"])

        session = await resolver.approve(decision.session_id)

        assert session.consent_required_scopes == ["wallet:pay", "room:invite"]
        assert await approval_store.approved_scopes(
            ALICE, "ma_demo", ["wallet:pay", "room:invite"]
        ) == {"wallet:pay", "room:invite"}
        history = await approval_store.history(ALICE, "ma_demo", ["wallet:pay"])
        assert history[0].approval_method == USER_CONSENT_METHOD

    async def test_second_submission_finds_nothing(self, resolver):
        decision = await resolver.resolve(ALICE, "ma_demo", ["wallet:pay"])
        await resolver.approve(decision.session_id)

        with pytest.raises(ConsentError) as exc_info:
            await resolver.approve(decision.session_id)
        assert exc_info.value.kind is ConsentErrorKind.SESSION_NOT_FOUND

    async def test_decline_records_nothing(self, resolver, approval_store):
        decision = await resolver.resolve(ALICE, "ma_demo", ["wallet:pay"])

        await resolver.decline(decision.session_id)

        assert approval_store.rows == []
        assert await resolver.load_session(decision.session_id) is None
        with pytest.raises(ConsentError):
            await resolver.approve(decision.session_id)

    async def test_load_session_does_not_consume(self, resolver):
        decision = await resolver.resolve(ALICE, "ma_demo", ["wallet:pay"])

        loaded = await resolver.load_session(decision.session_id)

        assert loaded.subject == ALICE
        assert loaded.app_id == "ma_demo"
        assert (await resolver.approve(decision.session_id)).session_id == decision.session_id

    async def test_unknown_session(self, resolver):
        with pytest.raises(ConsentError):
            await resolver.decline("no-such-session")
