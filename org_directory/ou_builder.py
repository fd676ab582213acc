"""Builds the asset OU subtree that mirrors the department hierarchy."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ldap3 import BASE, SUBTREE

from .config import DirectoryConfig
from .errors import DirectoryError, Intent, OrgDirectoryError, Outcome, ValidationError, classify
from .models import DepartmentNode
from .naming import normalize_dn, numeric_tag, ou_dn, rdn_count, sanitize_name
from .org_cache import OrgTreeCache
from .session import LDAPSession

logger = logging.getLogger(__name__)

OU_OBJECT_CLASSES = ("top", "organizationalUnit")


@dataclass
class RebuildReport:
    root_dn: str
    removed: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root_dn,
            "removed": len(self.removed),
            "organizational_units": list(self.created),
        }


class AssetStructureBuilder:
    """Idempotent creation, recursive build and wipe of OU subtrees.

    A rebuild wipes and recreates the whole asset subtree, so two rebuilds
    must never run at the same time against the same directory.
    """

    def __init__(
        self,
        session: LDAPSession,
        config: DirectoryConfig,
        cache: Optional[OrgTreeCache] = None,
    ):
        self.session = session
        self.config = config
        self.cache = cache

    @property
    def root_dn(self) -> str:
        return ou_dn(sanitize_name(self.config.asset_ou), self.config.base_dn)

    def exists(self, dn: str) -> bool:
        try:
            return bool(self.session.search(dn, "(objectClass=*)", scope=BASE))
        except DirectoryError as exc:
            if classify(exc, Intent.LOOKUP) is Outcome.NOT_SATISFIABLE:
                return False
            raise

    def ensure_ou(
        self,
        parent_dn: str,
        raw_name: str,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Return the DN of ``raw_name`` under ``parent_dn``, creating it when absent."""

        name = sanitize_name(raw_name)
        if not name:
            raise ValidationError(f"Organizational unit name {raw_name!r} is empty once sanitized.")

        dn = ou_dn(name, parent_dn)
        if self.exists(dn):
            logger.debug("OU already present: %s", dn)
            return dn

        payload: Dict[str, Any] = {"ou": name}
        payload.update(attributes or {})
        try:
            self.session.add(dn, OU_OBJECT_CLASSES, payload)
        except DirectoryError as exc:
            if classify(exc, Intent.CREATE) is Outcome.ALREADY_SATISFIED:
                logger.debug("OU appeared concurrently: %s", dn)
                return dn
            raise
        logger.info("Created OU %s", dn)
        return dn

    def build_subtree(self, parent_dn: str, nodes: Iterable[DepartmentNode]) -> List[str]:
        """Ensure one OU per node (and its children); any failure aborts the build."""

        ensured: List[str] = []
        for node in nodes:
            if not sanitize_name(node.display_name):
                logger.warning("Skipping department %s: name is empty once sanitized", node.id)
                continue
            attributes = {"description": node.display_name, "postalCode": numeric_tag(node.id)}
            try:
                dn = self.ensure_ou(parent_dn, node.display_name, attributes)
            except OrgDirectoryError:
                logger.error("Subtree build under %s aborted at department %s", parent_dn, node.id)
                raise
            ensured.append(dn)
            if node.children:
                ensured.extend(self.build_subtree(dn, node.children))
        return ensured

    def wipe_subtree(self, dn: str) -> List[str]:
        """Delete every descendant of ``dn``, leaves first; ``dn`` itself is kept."""

        try:
            entries = self.session.search(dn, "(objectClass=*)", scope=SUBTREE, paged=True)
        except DirectoryError as exc:
            if classify(exc, Intent.LOOKUP) is Outcome.NOT_SATISFIABLE:
                return []
            raise

        root_key = normalize_dn(dn)
        queue = [entry.dn for entry in entries if normalize_dn(entry.dn) != root_key]
        queue.reverse()
        # Stable, so discovery order is kept among entries of equal depth.
        queue.sort(key=rdn_count, reverse=True)

        for child_dn in queue:
            try:
                self.session.delete(child_dn)
            except DirectoryError as exc:
                if classify(exc, Intent.REMOVE) is Outcome.ALREADY_SATISFIED:
                    logger.debug("Already gone: %s", child_dn)
                    continue
                raise
            logger.info("Deleted %s", child_dn)
        return queue

    def rebuild(self) -> RebuildReport:
        """Full resynchronisation of the asset subtree from the relational store."""

        if self.cache is None:
            raise ValidationError("A rebuild needs an OrgTreeCache.")

        nodes = self.cache.load()
        try:
            report = RebuildReport(root_dn=self.root_dn)
            if self.exists(report.root_dn):
                logger.info("Cleaning content of %s", report.root_dn)
                report.removed = self.wipe_subtree(report.root_dn)
            else:
                self.ensure_ou(
                    self.config.base_dn,
                    self.config.asset_ou,
                    {"description": "Estructura organizativa sincronizada"},
                )
            report.created = self.build_subtree(report.root_dn, nodes)
        finally:
            self.cache.clear()
        logger.info(
            "Asset tree rebuilt: %s entries removed, %s OUs ensured",
            len(report.removed),
            len(report.created),
        )
        return report


__all__ = ["AssetStructureBuilder", "OU_OBJECT_CLASSES", "RebuildReport"]
