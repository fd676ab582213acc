"""Removal of directory accounts and their dependent relational records."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ldap3 import SUBTREE

from .config import DirectoryConfig
from .errors import AmbiguousMatchError, NotFoundError, OrgDirectoryError, ValidationError
from .naming import escape_filter_value
from .records import RecordStore
from .session import LDAPSession

logger = logging.getLogger(__name__)


class AccountRetirement:
    def __init__(self, session: LDAPSession, config: DirectoryConfig, store: Optional[RecordStore] = None):
        self.session = session
        self.config = config
        self.store = store

    def remove_account(self, identifier: str) -> Dict[str, Any]:
        """Delete the single account matching ``identifier`` by employee id or login.

        Device records of the account are removed first on a best-effort
        basis; the directory deletion itself always propagates its failure.
        """

        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("An employee id or login name is required.")

        escaped = escape_filter_value(identifier)
        login_attribute = self.config.login_attribute
        entries = self.session.search(
            self.config.base_dn,
            "(&(objectClass=person)"
            f"(|({self.config.employee_id_attribute}={escaped})({login_attribute}={escaped})))",
            scope=SUBTREE,
            attributes=[login_attribute, self.config.employee_id_attribute],
        )
        if not entries:
            raise NotFoundError(f"No account matches '{identifier}'.")
        if len(entries) > 1:
            raise AmbiguousMatchError(
                f"Identifier '{identifier}' has multiple matches: "
                + ", ".join(entry.dn for entry in entries)
            )

        entry = entries[0]
        login = entry.first(login_attribute) or identifier
        devices_removed = self._remove_devices(login)

        self.session.delete(entry.dn)
        logger.info("Deleted account %s", entry.dn)
        return {
            "distinguished_name": entry.dn,
            "login": login,
            "devices_removed": devices_removed,
        }

    def _remove_devices(self, login: str) -> Optional[int]:
        if self.store is None:
            return None
        try:
            removed = self.store.delete_devices(login)
        except OrgDirectoryError as exc:
            logger.warning("Could not delete devices of %s: %s", login, exc)
            return None
        logger.info("Deleted %s device records of %s", removed, login)
        return removed


__all__ = ["AccountRetirement"]
