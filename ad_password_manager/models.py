"""Data models for directory identities, account summaries and staged changes."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

USER = "user"
GROUP = "group"


def normalize_sam_account_name(raw: str) -> str:
    """Strip ``DOMAIN\\`` prefixes and ``@domain`` suffixes from a login name."""

    name = (raw or "").strip()
    if "\\" in name:
        name = name.split("\\", 1)[1]
    if "@" in name:
        name = name.split("@", 1)[0]
    return name


def identity_key(sam_account_name: str) -> str:
    """Case-insensitive match key for sAMAccountName values."""

    return (sam_account_name or "").casefold()


@dataclass(frozen=True)
class DirectoryIdentity:
    """A user or group principal as read during a single directory session."""

    kind: str
    sam_account_name: str
    distinguished_name: str = ""
    display_name: str = ""
    email_address: str = ""
    password_never_expires: bool = False
    last_password_set: Optional[datetime] = None
    locked: bool = False
    enabled: bool = True

    @property
    def key(self) -> str:
        return identity_key(self.sam_account_name)

    @property
    def is_user(self) -> bool:
        return self.kind == USER

    @property
    def is_group(self) -> bool:
        return self.kind == GROUP


@dataclass(frozen=True)
class ManagedUserSummary:
    """Projection of a user account for list and edit views."""

    username: str
    display_name: str = ""
    email_address: str = ""
    password_never_expires: bool = False
    password_change_required: bool = False

    @classmethod
    def from_identity(cls, identity: DirectoryIdentity) -> "ManagedUserSummary":
        # "Change required" is approximated by a never-set password.
        return cls(
            username=identity.sam_account_name,
            display_name=identity.display_name or "",
            email_address=identity.email_address or "",
            password_never_expires=bool(identity.password_never_expires),
            password_change_required=identity.last_password_set is None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "displayName": self.display_name,
            "emailAddress": self.email_address,
            "passwordNeverExpires": self.password_never_expires,
            "passwordChangeRequired": self.password_change_required,
        }


@dataclass(frozen=True)
class PasswordResetRequest:
    """A single-use reset instruction. The password is never part of ``repr``."""

    username: str
    new_password: str = field(repr=False)
    set_password_never_expires: bool = False
    require_change_on_next_logon: bool = False


@dataclass(frozen=True)
class AccountChanges:
    """Uncommitted attribute changes for one account.

    Every ``with_*`` method returns a new instance; nothing reaches the
    directory until the whole value is handed to ``ADClient.commit``.
    """

    password: Optional[str] = field(default=None, repr=False)
    password_never_expires: Optional[bool] = None
    expire_password: bool = False
    unlock: bool = False

    def with_password(self, password: str) -> "AccountChanges":
        return replace(self, password=password)

    def with_never_expires(self, value: bool) -> "AccountChanges":
        return replace(self, password_never_expires=bool(value))

    def with_expired_password(self) -> "AccountChanges":
        return replace(self, expire_password=True)

    def with_unlock(self) -> "AccountChanges":
        return replace(self, unlock=True)

    @property
    def is_empty(self) -> bool:
        return (
            self.password is None
            and self.password_never_expires is None
            and not self.expire_password
            and not self.unlock
        )

    def describe(self) -> str:
        """Loggable summary that never includes the password value."""

        parts = []
        if self.password is not None:
            parts.append("password=<set>")
        if self.password_never_expires is not None:
            parts.append(f"never_expires={self.password_never_expires}")
        if self.expire_password:
            parts.append("expire_now=True")
        if self.unlock:
            parts.append("unlock=True")
        return " ".join(parts) or "<none>"


__all__ = [
    "AccountChanges",
    "DirectoryIdentity",
    "GROUP",
    "ManagedUserSummary",
    "PasswordResetRequest",
    "USER",
    "identity_key",
    "normalize_sam_account_name",
]
