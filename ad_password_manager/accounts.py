"""Read and update individual accounts on behalf of a delegated admin."""
from __future__ import annotations

import logging
from typing import Optional

from .config import AppConfig
from .delegation import SessionFactory, default_session_factory
from .models import ManagedUserSummary, PasswordResetRequest, normalize_sam_account_name

logger = logging.getLogger(__name__)


class AccountStatusReader:
    """Fetches the current status projection of one account."""

    def __init__(self, config: AppConfig, session_factory: Optional[SessionFactory] = None) -> None:
        self.config = config
        self._session_factory = session_factory or default_session_factory(config)

    def get_status(self, username: str) -> Optional[ManagedUserSummary]:
        username = normalize_sam_account_name(username)
        logger.debug("Getting status for user=%s", username)
        if not username:
            return None

        try:
            with self._session_factory() as directory:
                user = directory.find_user(username)
                if user is None:
                    logger.warning("User %s not found when trying to get status.", username)
                    return None
                return ManagedUserSummary.from_identity(user)
        except Exception:
            logger.exception("Failed to get status for user=%s", username)
            return None


class AccountMutator:
    """Applies a password reset and its policy flags as one directory write."""

    def __init__(self, config: AppConfig, session_factory: Optional[SessionFactory] = None) -> None:
        self.config = config
        self._session_factory = session_factory or default_session_factory(config)

    def reset_password(self, request: PasswordResetRequest) -> bool:
        """Reset the password and flags for ``request.username``.

        The target is always unlocked. Returns ``False`` on any failure; the
        failing step is only reported in the log.
        """

        username = normalize_sam_account_name(request.username)
        logger.info(
            "Attempting password reset for user=%s set_never_expires=%s require_change=%s",
            username,
            request.set_password_never_expires,
            request.require_change_on_next_logon,
        )
        if not username or not request.new_password:
            logger.warning("Password reset for user=%s rejected: username and new password are required.", username)
            return False

        step = "connect"
        try:
            with self._session_factory() as directory:
                step = "lookup"
                user = directory.find_user(username)
                if user is None:
                    logger.warning("User %s not found. Password reset failed.", username)
                    return False

                step = "stage password"
                directory.set_password(user, request.new_password)
                step = "stage never-expires"
                directory.set_never_expires(user, request.set_password_never_expires)
                if request.require_change_on_next_logon:
                    step = "stage expire-now"
                    directory.expire_now(user)
                step = "stage unlock"
                directory.unlock(user)

                step = "commit"
                directory.commit(user)
        except Exception:
            logger.exception("Password reset for user=%s failed during %s.", username, step)
            return False

        logger.info("Successfully saved all changes for user=%s", username)
        return True


__all__ = ["AccountMutator", "AccountStatusReader"]
