"""
Tests for the PostgreSQL stores. Skipped when no database is reachable.
"""

import asyncio

from tween.tep.model.approvals import ApprovalRecord
from tween.tep.model.base import utcnow
from tween.tep.model.mini_apps import MiniApp
from tween.tep.store.sql import SqlAppRegistry, SqlApprovalStore, SqlUserStore

from sqlalchemy import func, select

ALICE = "@alice:example.org"


class TestSqlUserStore:
    """First-seen provisioning."""

    async def test_provisioned_once(self, session_maker):
        store = SqlUserStore(session_maker)

        first = await store.find_or_create(ALICE)
        second = await store.find_or_create(ALICE)

        assert first == second
        assert first.username == "alice"
        assert first.homeserver == "example.org"
        assert first.wallet_id == "tw__alice_example.org"
        assert await store.find(ALICE) == first

    async def test_unknown_user(self, session_maker):
        assert await SqlUserStore(session_maker).find("@nobody:example.org") is None


class TestSqlApprovalStore:
    """Approvals are append-only and the newest feed the history."""

    async def test_approved_scopes(self, session_maker):
        store = SqlApprovalStore(session_maker)
        await store.record_approvals(ALICE, "ma_demo", ["wallet:pay"], "user_consent")

        assert await store.approved_scopes(ALICE, "ma_demo", ["wallet:pay", "room:invite"]) == {
            "wallet:pay"
        }
        assert await store.approved_scopes(ALICE, "ma_other", ["wallet:pay"]) == set()
        assert await store.approved_scopes(ALICE, "ma_demo", []) == set()

    async def test_rows_are_appended(self, session_maker):
        store = SqlApprovalStore(session_maker)
        await store.record_approvals(ALICE, "ma_demo", ["wallet:pay"], "user_consent")
        await asyncio.sleep(0.01)
        await store.record_approvals(ALICE, "ma_demo", ["wallet:pay"], "re_consent")

        async with session_maker() as session:
            count = await session.scalar(select(func.count()).select_from(ApprovalRecord))
        history = await store.history(ALICE, "ma_demo", ["wallet:pay"])

        assert count == 2
        assert [entry.approval_method for entry in history] == ["re_consent", "user_consent"]
        assert len(await store.history(ALICE, "ma_demo", ["wallet:pay"], limit=1)) == 1


class TestSqlAppRegistry:
    """Only active mini-apps authenticate."""

    async def test_find_active_app(self, session_maker):
        async with session_maker() as session:
            async with session.begin():
                session.add_all(
                    [
                        MiniApp(
                            app_id="ma_shop",
                            name="Shop",
                            client_type="confidential",
                            client_secret="shop-secret-value",
                            scopes=["user:read", "wallet:pay"],
                            classification="community",
                            status="active",
                            created_at=utcnow(),
                        ),
                        MiniApp(
                            app_id="ma_gone",
                            name="Gone",
                            client_type="public",
                            scopes=[],
                            classification="community",
                            status="suspended",
                            created_at=utcnow(),
                        ),
                    ]
                )

        registry = SqlAppRegistry(session_maker)
        app = await registry.find_app("ma_shop")

        assert app.registered_scopes == ("user:read", "wallet:pay")
        assert app.requires_secret is True
        assert await registry.find_app("ma_gone") is None
        assert await registry.find_app("ma_missing") is None
