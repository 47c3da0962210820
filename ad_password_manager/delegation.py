"""Resolve which end-user accounts a delegated admin may manage."""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Callable, ContextManager, Dict, List, Optional, Set

from .ad_client import ADClient, directory_session
from .config import AppConfig, DelegationSettings
from .models import DirectoryIdentity, ManagedUserSummary, identity_key, normalize_sam_account_name

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[ADClient]]


def default_session_factory(config: AppConfig) -> SessionFactory:
    return functools.partial(directory_session, config.ldap)


def managed_groups_for(delegation: DelegationSettings, admin_groups: Set[str]) -> Dict[str, str]:
    """Union the managed groups of every mapping whose admin group is held.

    ``admin_groups`` may use any case. The result maps each casefolded
    managed group name to the first spelling seen in configuration.
    """

    held = {identity_key(name) for name in admin_groups}
    matched = [mapping for mapping in delegation if identity_key(mapping.admin_group) in held]
    groups: Dict[str, str] = {}
    for mapping in matched:
        logger.info("Delegation match: admin_group=%s managed_groups=%s", mapping.admin_group, sorted(mapping.managed_groups))
        for name in sorted(mapping.managed_groups):
            groups.setdefault(identity_key(name), name)
    return groups


def sort_summaries(summaries: List[ManagedUserSummary]) -> List[ManagedUserSummary]:
    return sorted(summaries, key=lambda summary: (summary.username.casefold(), summary.username))


@dataclass(frozen=True)
class ManagedUsersResolution:
    """Accounts found for an admin; ``complete`` is False when the directory failed part-way."""

    users: List[ManagedUserSummary]
    complete: bool = True

    def contains(self, username: str) -> bool:
        target = identity_key(normalize_sam_account_name(username))
        return bool(target) and any(identity_key(user.username) == target for user in self.users)


class DelegationResolver:
    """Computes the deduplicated, sorted set of accounts an admin manages."""

    def __init__(self, config: AppConfig, session_factory: Optional[SessionFactory] = None) -> None:
        self.config = config
        self._session_factory = session_factory or default_session_factory(config)

    def resolve_managed_users(self, admin_username: str) -> List[ManagedUserSummary]:
        return self.resolve(admin_username).users

    def resolve(self, admin_username: str) -> ManagedUsersResolution:
        admin = normalize_sam_account_name(admin_username)
        logger.debug("Resolving managed users for admin=%s", admin)

        if not self.config.ldap.domain or not self.config.delegation:
            logger.warning("Directory domain or delegation mappings are not configured; admin=%s manages nobody.", admin)
            return ManagedUsersResolution([])
        if not self.config.ldap.is_configured:
            logger.warning("Directory service account is not configured; admin=%s manages nobody.", admin)
            return ManagedUsersResolution([])

        managed: Dict[str, DirectoryIdentity] = {}
        complete = True
        try:
            with self._session_factory() as directory:
                admin_identity = directory.find_user(admin)
                if admin_identity is None:
                    logger.warning("Admin user %s was not found in the directory.", admin)
                    return ManagedUsersResolution([])

                admin_groups = directory.groups_of(admin_identity)
                logger.debug("Admin %s is effectively a member of %s", admin, sorted(admin_groups))

                groups_to_manage = managed_groups_for(self.config.delegation, admin_groups)
                logger.debug("Admin %s manages groups %s", admin, sorted(groups_to_manage.values()))

                for group_name in groups_to_manage.values():
                    group = directory.find_group(group_name)
                    if group is None:
                        logger.warning("Managed group %s was not found in the directory; skipping.", group_name)
                        continue
                    for member in directory.members_of(group, recursive=True):
                        if member.is_user:
                            managed.setdefault(member.key, member)
        except Exception:
            complete = False
            logger.exception(
                "Failed to resolve managed users for admin=%s; returning %d accounts found so far.",
                admin,
                len(managed),
            )

        logger.info("Admin %s manages %d unique accounts.", admin, len(managed))
        users = sort_summaries([ManagedUserSummary.from_identity(member) for member in managed.values()])
        return ManagedUsersResolution(users, complete)

    def is_managed_by(self, admin_username: str, username: str) -> bool:
        """Whether ``username`` is within the accounts ``admin_username`` manages."""

        return self.resolve(admin_username).contains(username)


__all__ = [
    "DelegationResolver",
    "ManagedUsersResolution",
    "SessionFactory",
    "default_session_factory",
    "managed_groups_for",
    "sort_summaries",
]
