"""Identity boundary: every core operation runs on behalf of a resolved user id."""

from __future__ import annotations

from multichat.errors import Unauthorized


def require_user(user_id: str | None) -> str:
    """Return the normalized user id, or raise Unauthorized when absent."""
    if user_id is None or not str(user_id).strip():
        raise Unauthorized()
    return str(user_id).strip()
