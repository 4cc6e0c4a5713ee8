"""
Consent adjudication for sensitive scopes.

``ConsentResolver.resolve`` splits a requested scope list into scopes that may be granted silently
and scopes that need the user's explicit approval. Sensitive scopes are pre-approved only when an
approval exists for the same subject, app, and scope; every other scope is always pre-approved.

When anything needs approval a consent session is written to Redis for 15 minutes. The user
approves or declines it exactly once: both paths consume the session with ``GETDEL``, so a
second submission finds nothing.
"""

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel

from tween.tep.app.metrics import MetricsClient, NoOpMetricsClient
from tween.tep.cache import consume_record, read_record, write_record
from tween.tep.store import ApprovalStore

logger = logging.getLogger(__name__)

SENSITIVE_SCOPES = frozenset(
    {
        "wallet:pay",
        "wallet:request",
        "wallet:history",
        "messaging:send",
        "room:create",
        "room:invite",
    }
)
CONSENT_SESSION_TTL = 900
USER_CONSENT_METHOD = "user_consent"


def consent_session_key(session_id: str) -> str:
    return f"consent:{session_id}"


class ConsentErrorKind(str, Enum):
    SESSION_NOT_FOUND = "session_not_found"


class ConsentError(Exception):
    def __init__(self, kind: ConsentErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @staticmethod
    def session_not_found() -> "ConsentError":
        return ConsentError(
            ConsentErrorKind.SESSION_NOT_FOUND,
            "error-consent-1000 Consent session not found or expired",
        )


class ConsentSession(BaseModel):
    session_id: str
    subject: str
    app_id: str
    pre_approved_scopes: List[str]
    consent_required_scopes: List[str]


@dataclass(frozen=True)
class ConsentDecision:
    authorized_scopes: List[str]
    consent_required: bool
    pre_approved_scopes: List[str]
    consent_required_scopes: List[str] = field(default_factory=list)
    session_id: Optional[str] = None


class ConsentResolver:
    def __init__(
        self,
        approval_store: ApprovalStore,
        redis_client,
        session_ttl: int = CONSENT_SESSION_TTL,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.approval_store = approval_store
        self.redis_client = redis_client
        self.session_ttl = session_ttl
        self.metrics_client = metrics_client or NoOpMetricsClient()

    async def resolve(
        self, subject: str, app_id: str, requested_scopes: Sequence[str]
    ) -> ConsentDecision:
        scopes = list(dict.fromkeys(requested_scopes))
        sensitive = [scope for scope in scopes if scope in SENSITIVE_SCOPES]
        approved = (
            await self.approval_store.approved_scopes(subject, app_id, sensitive)
            if sensitive
            else set()
        )

        pre_approved = [
            scope for scope in scopes if scope not in SENSITIVE_SCOPES or scope in approved
        ]
        consent_required = [
            scope for scope in scopes if scope in SENSITIVE_SCOPES and scope not in approved
        ]

        if not consent_required:
            self.metrics_client.increment("tep.consent.resolved", 1, tag_dict={"outcome": "approved"})
            return ConsentDecision(
                authorized_scopes=pre_approved,
                consent_required=False,
                pre_approved_scopes=pre_approved,
            )

        session = ConsentSession(
            session_id=secrets.token_urlsafe(24),
            subject=subject,
            app_id=app_id,
            pre_approved_scopes=pre_approved,
            consent_required_scopes=consent_required,
        )
        await write_record(
            self.redis_client,
            consent_session_key(session.session_id),
            session.model_dump(),
            self.session_ttl,
        )
        logger.info(
            "Consent required for %s on %s: %s", subject, app_id, " ".join(consent_required)
        )
        self.metrics_client.increment("tep.consent.resolved", 1, tag_dict={"outcome": "required"})
        return ConsentDecision(
            authorized_scopes=pre_approved,
            consent_required=True,
            pre_approved_scopes=pre_approved,
            consent_required_scopes=consent_required,
            session_id=session.session_id,
        )

    async def load_session(self, session_id: str) -> Optional[ConsentSession]:
        record = await read_record(self.redis_client, consent_session_key(session_id))
        return ConsentSession.model_validate(record) if record is not None else None

    async def approve(
        self, session_id: str, approval_method: str = USER_CONSENT_METHOD
    ) -> ConsentSession:
        session = await self._consume(session_id)
        await self.approval_store.record_approvals(
            session.subject,
            session.app_id,
            session.consent_required_scopes,
            approval_method,
        )
        self.metrics_client.increment("tep.consent.submitted", 1, tag_dict={"approved": "true"})
        return session

    async def decline(self, session_id: str) -> ConsentSession:
        session = await self._consume(session_id)
        logger.info("Consent declined by %s for %s", session.subject, session.app_id)
        self.metrics_client.increment("tep.consent.submitted", 1, tag_dict={"approved": "false"})
        return session

    async def _consume(self, session_id: str) -> ConsentSession:
        record = await consume_record(self.redis_client, consent_session_key(session_id))
        if record is None:
            raise ConsentError.session_not_found()
        return ConsentSession.model_validate(record)
