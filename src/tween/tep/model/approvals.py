"""Consent approvals.

Rows are only ever inserted. Approving the same scope twice leaves two rows, and the newest ones
feed a token's approval history.
"""

from sqlalchemy import Index
from sqlalchemy.orm import Mapped

from tween.tep.model.base import Base, guidpk, str64, str512, timestamptz


class ApprovalRecord(Base):
    __tablename__ = "authorization_approvals"

    guid: Mapped[guidpk]
    subject: Mapped[str512]
    app_id: Mapped[str64]
    scope: Mapped[str512]
    approved_at: Mapped[timestamptz]
    approval_method: Mapped[str64]

    __table_args__ = (
        Index("idx_approvals_subject_app_scope", "subject", "app_id", "scope"),
        Index("idx_approvals_approved_at", "approved_at"),
    )
