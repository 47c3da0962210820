"""Active Directory gateway based on ldap3."""
from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import yaml
from ldap3 import ALL, BASE, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.protocol.formatters.formatters import format_sid
from ldap3.utils.conv import escape_filter_chars

from .config import LDAPConfig
from .models import (
    GROUP,
    USER,
    AccountChanges,
    DirectoryIdentity,
    identity_key,
    normalize_sam_account_name,
)

logger = logging.getLogger(__name__)

UAC_ACCOUNTDISABLE = 0x00000002
UAC_NORMAL_ACCOUNT = 0x00000200
UAC_DONT_EXPIRE_PASSWORD = 0x00010000

MATCHING_RULE_IN_CHAIN = "1.2.840.113556.1.4.1941"
USER_FILTER = "(&(objectCategory=person)(objectClass=user))"
GROUP_FILTER = "(objectClass=group)"
USER_ATTRIBUTES = [
    "sAMAccountName",
    "displayName",
    "mail",
    "userAccountControl",
    "pwdLastSet",
    "lockoutTime",
]
GROUP_ATTRIBUTES = ["sAMAccountName", "displayName", "mail"]
SID_BATCH_SIZE = 100
PAGE_SIZE = 500

_FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)


class DirectoryError(RuntimeError):
    """Base exception for directory gateway failures."""


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory cannot be reached or the service bind fails."""


class DirectoryOperationFailed(DirectoryError):
    """Raised when a directory read or write does not complete."""


class DirectoryWriteRejected(DirectoryOperationFailed):
    """Raised when the directory refuses a modification (e.g. password policy)."""

    def __init__(self, target: str, description: str, message: Optional[str] = None) -> None:
        super().__init__(
            f"Active Directory rejected the update for {target} ({description})."
            + (f" {message}" if message else "")
        )
        self.target = target
        self.description = description
        self.message = message


class MockDirectory:
    """Lightweight directory emulator used when ldap3 connectivity isn't available.

    The YAML data file holds ``users`` and ``groups`` lists keyed by
    ``sAMAccountName``; group ``members`` name users or other groups. An
    optional ``password_policy.min_length`` makes commits reject short
    passwords the way a domain policy would.
    """

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {"users": [], "groups": [], "password_policy": {}}
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])
        self._data.setdefault("password_policy", {})

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    def _find(self, collection: str, sam_account_name: str) -> Optional[Dict[str, Any]]:
        wanted = identity_key(sam_account_name)
        for record in self._data.get(collection, []):
            if identity_key(str(record.get("sAMAccountName") or "")) == wanted:
                return record
        return None

    @staticmethod
    def _dn(record: Dict[str, Any], container: str) -> str:
        return str(
            record.get("distinguishedName")
            or f"CN={record.get('sAMAccountName')},OU={container},DC=mock"
        )

    def _user_identity(self, record: Dict[str, Any]) -> DirectoryIdentity:
        return DirectoryIdentity(
            kind=USER,
            sam_account_name=str(record.get("sAMAccountName")),
            distinguished_name=self._dn(record, "Users"),
            display_name=str(record.get("displayName") or ""),
            email_address=str(record.get("mail") or ""),
            password_never_expires=bool(record.get("passwordNeverExpires", False)),
            last_password_set=ad_timestamp(record.get("pwdLastSet")),
            locked=bool(record.get("lockedOut", False)),
            enabled=bool(record.get("enabled", True)),
        )

    def _group_identity(self, record: Dict[str, Any]) -> DirectoryIdentity:
        return DirectoryIdentity(
            kind=GROUP,
            sam_account_name=str(record.get("sAMAccountName")),
            distinguished_name=self._dn(record, "Groups"),
            display_name=str(record.get("displayName") or ""),
            email_address=str(record.get("mail") or ""),
        )

    def find_user(self, sam_account_name: str) -> Optional[DirectoryIdentity]:
        record = self._find("users", sam_account_name)
        return self._user_identity(record) if record else None

    def find_group(self, sam_account_name: str) -> Optional[DirectoryIdentity]:
        record = self._find("groups", sam_account_name)
        return self._group_identity(record) if record else None

    def groups_of(self, user: DirectoryIdentity) -> Set[str]:
        found: Set[str] = set()
        pending = [user.key]
        seen_keys = {user.key}
        while pending:
            member_key = pending.pop()
            for group in self._data.get("groups", []):
                name = str(group.get("sAMAccountName") or "")
                members = {identity_key(str(value)) for value in group.get("members") or []}
                if member_key in members and identity_key(name) not in seen_keys:
                    seen_keys.add(identity_key(name))
                    found.add(name)
                    pending.append(identity_key(name))
        return found

    def members_of(self, group: DirectoryIdentity, recursive: bool = True) -> List[DirectoryIdentity]:
        members: List[DirectoryIdentity] = []
        visited_groups = {group.key}
        pending = [group.sam_account_name]
        while pending:
            record = self._find("groups", pending.pop(0))
            if not record:
                continue
            for value in record.get("members") or []:
                name = str(value)
                user = self._find("users", name)
                if user:
                    members.append(self._user_identity(user))
                    continue
                if recursive and self._find("groups", name) and identity_key(name) not in visited_groups:
                    visited_groups.add(identity_key(name))
                    pending.append(name)
        return members

    def commit(self, user: DirectoryIdentity, changes: AccountChanges) -> None:
        record = self._find("users", user.sam_account_name)
        if record is None:
            raise DirectoryWriteRejected(user.sam_account_name, "noSuchObject")

        min_length = int((self._data.get("password_policy") or {}).get("min_length") or 0)
        if changes.password is not None and len(changes.password) < min_length:
            raise DirectoryWriteRejected(
                user.sam_account_name,
                "constraintViolation",
                "The password does not meet the length requirements of the domain.",
            )

        if changes.password is not None:
            record["password"] = changes.password
            record["pwdLastSet"] = datetime.now(timezone.utc)
        if changes.password_never_expires is not None:
            record["passwordNeverExpires"] = changes.password_never_expires
        if changes.expire_password:
            record["pwdLastSet"] = None
        if changes.unlock:
            record["lockedOut"] = False
        self._save()

    def verify_credentials(self, sam_account_name: str, password: str) -> bool:
        record = self._find("users", sam_account_name)
        if not record or not record.get("enabled", True) or record.get("lockedOut"):
            return False
        return bool(password) and str(record.get("password") or "") == password


class ADClient:
    """Wrapper around ldap3 that exposes the delegation and reset operations.

    One instance is one authenticated session using the configured service
    account. Use :func:`directory_session` to scope it to a single operation.
    """

    def __init__(self, config: LDAPConfig, connection: Optional[Connection] = None):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.connection: Optional[Connection] = None
        self._staged: Dict[str, AccountChanges] = {}

        if connection is not None:
            # An already bound connection, e.g. one using ldap3's MOCK_SYNC strategy.
            self.server = connection.server
            self.connection = connection
            return

        if config.server_uri.startswith("mock://"):
            self._mock_directory = MockDirectory(config.mock_data_file)
            return

        try:
            self.server = Server(
                config.server_uri or config.domain,
                use_ssl=config.use_ssl,
                get_info=ALL,
                connect_timeout=config.connect_timeout,
            )
            self.connection = Connection(
                self.server,
                user=config.bind_user,
                password=config.service_password,
                auto_bind=True,
                receive_timeout=config.connect_timeout,
            )
        except LDAPException as exc:
            raise DirectoryUnavailable(
                f"Unable to bind to {config.server_uri or config.domain} as {config.bind_user}: {exc}"
            ) from exc

    def close(self) -> None:
        self._staged.clear()
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # Lookups -------------------------------------------------------------
    def find_user(self, sam_account_name: str) -> Optional[DirectoryIdentity]:
        sam_account_name = normalize_sam_account_name(sam_account_name)
        if not sam_account_name:
            return None
        if self._mock_directory:
            return self._mock_directory.find_user(sam_account_name)

        search_filter = (
            f"(&{USER_FILTER}(sAMAccountName={escape_filter_chars(sam_account_name)}))"
        )
        entries = self._search(self._user_base, search_filter, USER_ATTRIBUTES)
        return _user_from_entry(entries[0]) if entries else None

    def find_group(self, sam_account_name: str) -> Optional[DirectoryIdentity]:
        sam_account_name = (sam_account_name or "").strip()
        if not sam_account_name:
            return None
        if self._mock_directory:
            return self._mock_directory.find_group(sam_account_name)

        search_filter = (
            f"(&{GROUP_FILTER}(sAMAccountName={escape_filter_chars(sam_account_name)}))"
        )
        entries = self._search(self._group_base, search_filter, GROUP_ATTRIBUTES)
        return _group_from_entry(entries[0]) if entries else None

    def groups_of(self, user: DirectoryIdentity) -> Set[str]:
        """Return the sAMAccountNames of every group the user is effectively in.

        Uses ``tokenGroups`` so nested memberships and the primary group are
        included, the same set Windows evaluates for authorization.
        """

        if self._mock_directory:
            return self._mock_directory.groups_of(user)

        entries = self._search(user.distinguished_name, "(objectClass=*)", ["tokenGroups"], scope=BASE)
        if not entries:
            return set()
        sids = [_sid_string(sid) for sid in _values(entries[0], "tokenGroups")]

        names: Set[str] = set()
        for start in range(0, len(sids), SID_BATCH_SIZE):
            batch = sids[start : start + SID_BATCH_SIZE]
            clauses = "".join(f"(objectSid={escape_filter_chars(sid)})" for sid in batch)
            search_filter = f"(&{GROUP_FILTER}(|{clauses}))"
            for entry in self._search(self.config.search_base, search_filter, ["sAMAccountName"], paged=True):
                name = _single(entry, "sAMAccountName")
                if name:
                    names.add(str(name))
        return names

    def members_of(self, group: DirectoryIdentity, recursive: bool = True) -> List[DirectoryIdentity]:
        """Return user members of ``group``; nested groups are expanded, not listed."""

        if self._mock_directory:
            return self._mock_directory.members_of(group, recursive)

        escaped_dn = escape_filter_chars(group.distinguished_name)
        rule = f":{MATCHING_RULE_IN_CHAIN}:" if recursive else ""
        search_filter = f"(&{USER_FILTER}(memberOf{rule}={escaped_dn}))"
        entries = self._search(self._user_base, search_filter, USER_ATTRIBUTES, paged=True)
        return [_user_from_entry(entry) for entry in entries]

    # Staged account changes ----------------------------------------------
    def staged_changes(self, user: DirectoryIdentity) -> AccountChanges:
        return self._staged.get(user.key, AccountChanges())

    def set_password(self, user: DirectoryIdentity, new_password: str) -> None:
        if not new_password:
            raise ValueError("A new password is required.")
        self._stage(user, self.staged_changes(user).with_password(new_password))

    def set_never_expires(self, user: DirectoryIdentity, value: bool) -> None:
        self._stage(user, self.staged_changes(user).with_never_expires(value))

    def expire_now(self, user: DirectoryIdentity) -> None:
        self._stage(user, self.staged_changes(user).with_expired_password())

    def unlock(self, user: DirectoryIdentity) -> None:
        self._stage(user, self.staged_changes(user).with_unlock())

    def _stage(self, user: DirectoryIdentity, changes: AccountChanges) -> None:
        if not user.is_user:
            raise ValueError(f"{user.sam_account_name} is not a user account.")
        self._staged[user.key] = changes

    def commit(self, user: DirectoryIdentity) -> None:
        """Write every staged change for ``user`` in a single modify request.

        Staged changes are discarded whether or not the write succeeds.
        """

        changes = self._staged.pop(user.key, AccountChanges())
        if changes.is_empty:
            return
        logger.debug("Committing changes for %s: %s", user.sam_account_name, changes.describe())

        if self._mock_directory:
            self._mock_directory.commit(user, changes)
            return

        current_uac = None
        if changes.password_never_expires is not None:
            entries = self._search(
                user.distinguished_name, "(objectClass=*)", ["userAccountControl"], scope=BASE
            )
            if not entries:
                raise DirectoryOperationFailed(f"User {user.sam_account_name} disappeared before commit.")
            current_uac = int(_single(entries[0], "userAccountControl") or UAC_NORMAL_ACCOUNT)

        modifications = build_modify_changes(changes, current_uac)
        connection = self._require_connection()
        try:
            succeeded = connection.modify(user.distinguished_name, modifications)
        except LDAPException as exc:
            raise DirectoryOperationFailed(
                f"Modify request for {user.sam_account_name} failed: {exc}"
            ) from exc
        if not succeeded:
            result = connection.result or {}
            raise DirectoryWriteRejected(
                user.sam_account_name,
                result.get("description", "Unknown error"),
                result.get("message"),
            )

    # Authentication ------------------------------------------------------
    def verify_credentials(self, username: str, password: str) -> bool:
        """Check a user's own credentials with a separate simple bind."""

        sam_account_name = normalize_sam_account_name(username)
        # An empty password would be accepted as an unauthenticated bind.
        if not sam_account_name or not password:
            return False
        if self._mock_directory:
            return self._mock_directory.verify_credentials(sam_account_name, password)

        probe = Connection(
            self.server,
            user=f"{sam_account_name}@{self.config.domain}",
            password=password,
            receive_timeout=self.config.connect_timeout,
        )
        try:
            return bool(probe.bind())
        except LDAPException as exc:
            raise DirectoryUnavailable(f"Unable to reach the directory to verify {sam_account_name}: {exc}") from exc
        finally:
            if probe.bound:
                probe.unbind()

    # Utilities -----------------------------------------------------------
    @property
    def _user_base(self) -> str:
        return self.config.user_search_base or self.config.search_base

    @property
    def _group_base(self) -> str:
        return self.config.group_search_base or self.config.search_base

    def _require_connection(self) -> Connection:
        if self.connection is None:
            raise DirectoryUnavailable("No directory connection is open.")
        return self.connection

    def _search(
        self,
        search_base: str,
        search_filter: str,
        attributes: Iterable[str],
        scope: str = SUBTREE,
        paged: bool = False,
    ) -> List[Dict[str, Any]]:
        """Run a search and return the ``searchResEntry`` response dicts."""

        connection = self._require_connection()
        try:
            if paged:
                response = connection.extend.standard.paged_search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=scope,
                    attributes=list(attributes),
                    paged_size=PAGE_SIZE,
                    generator=True,
                )
                # The generator stops quietly on a refused page; the result is checked below.
                entries = [entry for entry in response if entry.get("type") == "searchResEntry"]
            else:
                connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=scope,
                    attributes=list(attributes),
                )
                entries = [entry for entry in connection.response or [] if entry.get("type") == "searchResEntry"]
        except LDAPException as exc:
            raise DirectoryOperationFailed(f"Search under {search_base} failed: {exc}") from exc

        result = connection.result or {}
        # 32 is noSuchObject: a missing base DN means nothing matched.
        if result.get("result", 0) not in (0, 32):
            raise DirectoryOperationFailed(
                f"Search under {search_base} failed ({result.get('description', 'Unknown error')})."
            )
        return entries


def build_modify_changes(changes: AccountChanges, current_uac: Optional[int] = None) -> Dict[str, list]:
    """Translate staged changes into an ldap3 modify payload.

    Order matters: the password is written before ``pwdLastSet`` is cleared,
    otherwise the new password would reset the expiry marker.
    """

    modifications: Dict[str, list] = {}
    if changes.password is not None:
        modifications["unicodePwd"] = [(MODIFY_REPLACE, [encode_ad_password(changes.password)])]
    if changes.password_never_expires is not None:
        uac = UAC_NORMAL_ACCOUNT if current_uac is None else current_uac
        if changes.password_never_expires:
            uac |= UAC_DONT_EXPIRE_PASSWORD
        else:
            uac &= ~UAC_DONT_EXPIRE_PASSWORD
        modifications["userAccountControl"] = [(MODIFY_REPLACE, [uac])]
    if changes.expire_password:
        modifications["pwdLastSet"] = [(MODIFY_REPLACE, [0])]
    if changes.unlock:
        modifications["lockoutTime"] = [(MODIFY_REPLACE, [0])]
    return modifications


def encode_ad_password(password: str) -> bytes:
    return f'"{password}"'.encode("utf-16-le")


def ad_timestamp(value: Any) -> Optional[datetime]:
    """Normalize an AD FILETIME value; ``0``/unset becomes ``None``."""

    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.year <= 1601 or value.year >= 9999:
            return None
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and not value.strip().isdigit():
        try:
            return ad_timestamp(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    try:
        ticks = int(value)
    except (TypeError, ValueError):
        return None
    if ticks <= 0 or ticks >= 0x7FFFFFFFFFFFFFFF:
        return None
    return _FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def _values(entry: Dict[str, Any], attribute: str) -> List[Any]:
    value = entry.get("attributes", {}).get(attribute)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _sid_string(value: Any) -> str:
    """``tokenGroups`` is an octet string; ldap3 hands it back as raw SID bytes."""

    if isinstance(value, (bytes, bytearray)):
        return format_sid(bytes(value))
    return str(value)


def _single(entry: Dict[str, Any], attribute: str) -> Any:
    values = _values(entry, attribute)
    return values[0] if values else None


def _user_from_entry(entry: Dict[str, Any]) -> DirectoryIdentity:
    uac = int(_single(entry, "userAccountControl") or UAC_NORMAL_ACCOUNT)
    return DirectoryIdentity(
        kind=USER,
        sam_account_name=str(_single(entry, "sAMAccountName") or ""),
        distinguished_name=str(entry.get("dn") or ""),
        display_name=str(_single(entry, "displayName") or ""),
        email_address=str(_single(entry, "mail") or ""),
        password_never_expires=bool(uac & UAC_DONT_EXPIRE_PASSWORD),
        last_password_set=ad_timestamp(_single(entry, "pwdLastSet")),
        locked=ad_timestamp(_single(entry, "lockoutTime")) is not None,
        enabled=not (uac & UAC_ACCOUNTDISABLE),
    )


def _group_from_entry(entry: Dict[str, Any]) -> DirectoryIdentity:
    return DirectoryIdentity(
        kind=GROUP,
        sam_account_name=str(_single(entry, "sAMAccountName") or ""),
        distinguished_name=str(entry.get("dn") or ""),
        display_name=str(_single(entry, "displayName") or ""),
        email_address=str(_single(entry, "mail") or ""),
    )


@contextlib.contextmanager
def directory_session(config: LDAPConfig) -> Iterator[ADClient]:
    client = ADClient(config)
    try:
        yield client
    finally:
        client.close()


__all__ = [
    "ADClient",
    "DirectoryError",
    "DirectoryOperationFailed",
    "DirectoryUnavailable",
    "DirectoryWriteRejected",
    "MockDirectory",
    "ad_timestamp",
    "build_modify_changes",
    "directory_session",
    "encode_ad_password",
]
