"""Identifier helpers shared by the token, store, and delegation layers."""

import secrets
import string
from typing import Optional, Tuple

_ALPHANUMERIC = string.ascii_letters + string.digits


def random_alphanumeric(length: int = 24) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def split_subject(subject: str) -> Tuple[str, Optional[str]]:
    """
    Split a delegated subject such as ``@alice:example.org`` into its local part and homeserver.

    Subjects without a server part return ``None`` for the homeserver.
    """
    local, _, homeserver = subject.lstrip("@").partition(":")
    return local, homeserver or None


def wallet_id_for(subject: str) -> str:
    """``@alice:example.org`` becomes ``tw__alice_example.org``."""
    return "tw_" + subject.replace("@", "_").replace(":", "_")


def new_session_id() -> str:
    return f"sess_{random_alphanumeric(24)}"


def new_refresh_handle() -> str:
    return f"rt_{random_alphanumeric(32)}"


def fingerprint(value: Optional[str], length: int = 6) -> str:
    """Return a short prefix of a credential, safe for log lines."""
    if not value:
        return "<empty>"
    return f"{value[:length]}..."
