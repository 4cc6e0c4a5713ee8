"""
Persistence interfaces used by the token and consent layers.

The orchestrator and the consent resolver only see the abstract stores defined here. ``sql``
provides the PostgreSQL implementations wired up by the server; tests substitute in-memory ones.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Set, Tuple


@dataclass(frozen=True)
class UserRecord:
    subject: str
    username: str
    homeserver: Optional[str]
    wallet_id: str


@dataclass(frozen=True)
class AppRecord:
    app_id: str
    name: str
    client_type: str
    registered_scopes: Tuple[str, ...] = ()
    client_secret: Optional[str] = None

    @property
    def requires_secret(self) -> bool:
        return self.client_type == "confidential"

    @property
    def accepts_secret(self) -> bool:
        """Hybrid clients may authenticate, and are checked when they do."""
        return self.client_type in ("confidential", "hybrid")


@dataclass(frozen=True)
class ApprovalEntry:
    scope: str
    approved_at: datetime
    approval_method: str


class UserStore(ABC):
    @abstractmethod
    async def find_or_create(self, subject: str) -> UserRecord:
        """Return the user for a delegated subject, provisioning it on first sight."""

    @abstractmethod
    async def find(self, subject: str) -> Optional[UserRecord]:
        pass


class ApprovalStore(ABC):
    @abstractmethod
    async def approved_scopes(
        self, subject: str, app_id: str, scopes: Sequence[str]
    ) -> Set[str]:
        """The subset of ``scopes`` with at least one approval for this subject and app."""

    @abstractmethod
    async def record_approvals(
        self, subject: str, app_id: str, scopes: Sequence[str], approval_method: str
    ) -> None:
        pass

    @abstractmethod
    async def history(
        self, subject: str, app_id: str, scopes: Sequence[str], limit: int = 10
    ) -> List[ApprovalEntry]:
        """Approvals for any of ``scopes``, newest first."""


class AppRegistry(ABC):
    @abstractmethod
    async def find_app(self, app_id: str) -> Optional[AppRecord]:
        pass
