import logging
from typing import List, Optional, Sequence, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from tween.tep.identity import split_subject, wallet_id_for
from tween.tep.model.approvals import ApprovalRecord
from tween.tep.model.base import utcnow
from tween.tep.model.mini_apps import MiniApp
from tween.tep.model.users import User, upsert_user_stmt
from tween.tep.store import (
    AppRecord,
    AppRegistry,
    ApprovalEntry,
    ApprovalStore,
    UserRecord,
    UserStore,
)

logger = logging.getLogger(__name__)


class SqlUserStore(UserStore):
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.database_session_maker = database_session_maker

    async def find_or_create(self, subject: str) -> UserRecord:
        username, homeserver = split_subject(subject)
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                stmt = upsert_user_stmt(subject, username, homeserver, wallet_id_for(subject))
                row = (await database_session.execute(stmt)).one()
        return UserRecord(
            subject=row.subject,
            username=row.username,
            homeserver=row.homeserver,
            wallet_id=row.wallet_id,
        )

    async def find(self, subject: str) -> Optional[UserRecord]:
        async with self.database_session_maker() as database_session:
            user: Optional[User] = (
                await database_session.scalars(select(User).where(User.subject == subject))
            ).first()
        if user is None:
            return None
        return UserRecord(
            subject=user.subject,
            username=user.username,
            homeserver=user.homeserver,
            wallet_id=user.wallet_id,
        )


class SqlApprovalStore(ApprovalStore):
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.database_session_maker = database_session_maker

    async def approved_scopes(
        self, subject: str, app_id: str, scopes: Sequence[str]
    ) -> Set[str]:
        if not scopes:
            return set()
        stmt = (
            select(ApprovalRecord.scope)
            .where(
                ApprovalRecord.subject == subject,
                ApprovalRecord.app_id == app_id,
                ApprovalRecord.scope.in_(list(scopes)),
            )
            .distinct()
        )
        async with self.database_session_maker() as database_session:
            return set((await database_session.scalars(stmt)).all())

    async def record_approvals(
        self, subject: str, app_id: str, scopes: Sequence[str], approval_method: str
    ) -> None:
        now = utcnow()
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add_all(
                    [
                        ApprovalRecord(
                            guid=str(ULID()),
                            subject=subject,
                            app_id=app_id,
                            scope=scope,
                            approved_at=now,
                            approval_method=approval_method,
                        )
                        for scope in scopes
                    ]
                )
        logger.info("Recorded %d approvals for %s on %s", len(scopes), subject, app_id)

    async def history(
        self, subject: str, app_id: str, scopes: Sequence[str], limit: int = 10
    ) -> List[ApprovalEntry]:
        if not scopes:
            return []
        stmt = (
            select(ApprovalRecord)
            .where(
                ApprovalRecord.subject == subject,
                ApprovalRecord.app_id == app_id,
                ApprovalRecord.scope.in_(list(scopes)),
            )
            .order_by(ApprovalRecord.approved_at.desc())
            .limit(limit)
        )
        async with self.database_session_maker() as database_session:
            records = (await database_session.scalars(stmt)).all()
        return [
            ApprovalEntry(
                scope=record.scope,
                approved_at=record.approved_at,
                approval_method=record.approval_method,
            )
            for record in records
        ]


class SqlAppRegistry(AppRegistry):
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.database_session_maker = database_session_maker

    async def find_app(self, app_id: str) -> Optional[AppRecord]:
        stmt = select(MiniApp).where(MiniApp.app_id == app_id, MiniApp.status == "active")
        async with self.database_session_maker() as database_session:
            mini_app: Optional[MiniApp] = (await database_session.scalars(stmt)).first()
        if mini_app is None:
            return None
        return AppRecord(
            app_id=mini_app.app_id,
            name=mini_app.name,
            client_type=mini_app.client_type,
            registered_scopes=tuple(mini_app.scopes or ()),
            client_secret=mini_app.client_secret,
        )
