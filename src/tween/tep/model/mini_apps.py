"""Mini-app registry rows.

Review and publication metadata is owned elsewhere; the broker only reads what it needs to
authenticate a client and cap its scopes.
"""

from typing import Any, Optional

from sqlalchemy import Index, String
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from tween.tep.model.base import Base, str64, str512, timestamptz

APP_ID_PATTERN = r"^ma_[a-zA-Z0-9]+$"


class MiniApp(Base):
    __tablename__ = "mini_apps"

    app_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str512]
    client_type: Mapped[str64]
    client_secret: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    scopes: Mapped[Any] = mapped_column(JSON, nullable=False)
    classification: Mapped[str64]
    status: Mapped[str64]
    created_at: Mapped[timestamptz]

    __table_args__ = (Index("idx_mini_apps_status", "status"),)
