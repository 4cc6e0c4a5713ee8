"""Locally provisioned users.

A user row is created the first time a delegated subject exchanges a token. The row fixes the
user's wallet id so every later token and transfer agrees on it.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from tween.tep.model.base import Base, guidpk, str512, timestamptz, utcnow


class User(Base):
    """A delegated identity such as ``@alice:example.org`` and its wallet."""

    __tablename__ = "users"

    guid: Mapped[guidpk]
    subject: Mapped[str512]
    username: Mapped[str512]
    homeserver: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    wallet_id: Mapped[str512]
    created_at: Mapped[timestamptz]
    last_seen_at: Mapped[timestamptz]

    __table_args__ = (
        Index("idx_users_subject", "subject", unique=True),
        Index("idx_users_wallet_id", "wallet_id"),
    )


def upsert_user_stmt(
    subject: str,
    username: str,
    homeserver: Optional[str],
    wallet_id: str,
    now: Optional[datetime] = None,
):
    """Create PostgreSQL upsert statement for first-seen provisioning.

    An existing row only has ``last_seen_at`` bumped; its username, homeserver, and wallet id are
    kept as first provisioned.
    """
    now = now or utcnow()
    return (
        insert(User)
        .values(
            [
                {
                    "guid": str(ULID()),
                    "subject": subject,
                    "username": username,
                    "homeserver": homeserver,
                    "wallet_id": wallet_id,
                    "created_at": now,
                    "last_seen_at": now,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["subject"],
            set_={"last_seen_at": now},
        )
        .returning(User.subject, User.username, User.homeserver, User.wallet_id)
    )
