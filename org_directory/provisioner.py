"""Creates directory accounts under the organizational unit of their department."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ldap3 import SUBTREE
from ldap3.core.results import RESULT_ENTRY_ALREADY_EXISTS

from .config import AppConfig
from .errors import (
    ConflictError,
    DirectoryError,
    DirectoryOperationError,
    NotFoundError,
    OrgDirectoryError,
    ValidationError,
)
from .groups import GroupMembershipResolver
from .models import (
    BulkProvisionSummary,
    EmployeeRecord,
    GuestRequest,
    ProvisionResult,
    ProvisionStatus,
    normalize_department_id,
)
from .naming import (
    MAX_LOGIN_LENGTH,
    cn_dn,
    escape_filter_value,
    fallback_department_name,
    sanitize_login,
    sanitize_name,
)
from .ou_builder import AssetStructureBuilder
from .records import RecordStore
from .session import LDAPSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleProfile:
    prefix: str
    title: str
    description: str


# Keyed by (teaches, researches).
ROLE_PROFILES: Dict[Tuple[bool, bool], RoleProfile] = {
    (True, True): RoleProfile("Docente Investigador", "Docente e Investigador", "Docente e Investigador"),
    (True, False): RoleProfile("Docente", "Docente", "Personal docente"),
    (False, True): RoleProfile("Investigador", "Investigador", "Personal investigador"),
    (False, False): RoleProfile("Trabajador", "Trabajador", "Personal no docente"),
}

GUEST_PROFILE = RoleProfile("Invitado", "Usuario Invitado", "Usuario invitado")


def role_profile(teaches: bool, researches: bool) -> RoleProfile:
    return ROLE_PROFILES[(bool(teaches), bool(researches))]


class AccountProvisioner:
    """Provisions staff accounts from employee records and invited guest accounts."""

    def __init__(
        self,
        session: LDAPSession,
        config: AppConfig,
        store: RecordStore,
        groups: Optional[GroupMembershipResolver] = None,
        builder: Optional[AssetStructureBuilder] = None,
    ):
        self.session = session
        self.config = config
        self.directory = config.directory
        self.store = store
        self.groups = groups or GroupMembershipResolver(session, config.directory)
        self.builder = builder or AssetStructureBuilder(session, config.directory)

    # Staff accounts ------------------------------------------------------
    def provision(self, person_id: str) -> ProvisionResult:
        person_id = self.validate_person_id(person_id)

        employee = self.store.get_employee(person_id)
        if employee is None:
            logger.info("No active employee record for %s, nothing to provision", person_id)
            return ProvisionResult(ProvisionStatus.MISSING, person_id)

        if self.account_exists(person_id):
            logger.info("Account %s already exists, skipping", person_id)
            return ProvisionResult(ProvisionStatus.EXISTS, person_id)

        ou_dn, department_name = self.resolve_department_ou(employee.department_id)
        attributes = self.build_attributes(employee, department_name)
        dn = cn_dn(attributes["cn"], ou_dn)

        try:
            self._create_entry(dn, attributes)
        except ConflictError as exc:
            logger.warning("%s", exc)
            return ProvisionResult(ProvisionStatus.EXISTS, person_id, dn)

        self.groups.enroll(dn, self.config.provisioning.staff_groups)
        return ProvisionResult(ProvisionStatus.CREATED, person_id, dn)

    def provision_all(self) -> BulkProvisionSummary:
        """Provision every active employee; one failure never stops the run."""

        summary = BulkProvisionSummary()
        person_ids = self.store.active_employee_ids()
        logger.info("Employees to process: %s", len(person_ids))
        for person_id in person_ids:
            try:
                summary.record(self.provision(person_id))
            except OrgDirectoryError as exc:
                logger.error("Error provisioning employee %s: %s", person_id, exc)
                summary.failed[person_id] = str(exc)
        return summary

    def validate_person_id(self, person_id: str) -> str:
        cleaned = str(person_id or "").strip()
        if not re.fullmatch(self.config.provisioning.person_id_pattern, cleaned):
            raise ValidationError(f"Malformed person identifier: {person_id!r}")
        return cleaned

    def account_exists(self, login: str) -> bool:
        search_filter = (
            f"(&(objectClass=person)({self.directory.login_attribute}={escape_filter_value(login)}))"
        )
        return bool(self.session.search(self.directory.base_dn, search_filter, scope=SUBTREE))

    def resolve_department_ou(self, department_id: str) -> Tuple[str, str]:
        """DN and sanitized name of the OU that mirrors ``department_id``.

        The asset tree must already be built; a missing OU is never created here.
        """

        key = normalize_department_id(department_id)
        if not key:
            raise NotFoundError("Employee record has no department.")
        description = self.store.get_department_description(key)
        name = sanitize_name(description) or sanitize_name(
            fallback_department_name(key, self.config.provisioning.fallback_department_prefix)
        )
        entries = self.session.search(
            self.directory.base_dn,
            f"(&(objectClass=organizationalUnit)(ou={escape_filter_value(name)}))",
            scope=SUBTREE,
            attributes=["ou"],
        )
        if not entries:
            raise NotFoundError(
                f"No organizational unit '{name}' for department {key}; rebuild the asset tree first."
            )
        return entries[0].dn, name

    def build_attributes(self, employee: EmployeeRecord, department_name: str) -> Dict[str, Any]:
        profile = role_profile(employee.teaches, employee.researches)
        common_name = sanitize_name(f"{profile.prefix} {employee.first_name} {employee.surnames}")
        if not common_name:
            raise ValidationError(f"Employee {employee.id} has no usable name.")
        principal = f"{employee.id}@{self.directory.domain}"
        return {
            "cn": common_name,
            "givenName": employee.first_name,
            "sn": employee.surnames,
            "displayName": employee.display_name,
            self.directory.login_attribute: employee.id,
            "userPrincipalName": principal,
            "mail": principal,
            self.directory.employee_id_attribute: employee.employee_number or employee.id,
            "title": profile.title,
            "description": f"{profile.description} - {department_name}",
            "employeeType": profile.title,
            "department": department_name,
        }

    # Guest accounts ------------------------------------------------------
    def provision_guest(self, request: GuestRequest) -> ProvisionResult:
        if not request.first_name or not request.last_name:
            raise ValidationError("Guest accounts need a first and a last name.")
        if "@" not in request.email:
            raise ValidationError(f"Invalid e-mail address: {request.email!r}")
        base_login = sanitize_login(request.username)
        if not base_login:
            raise ValidationError(f"Unusable login name: {request.username!r}")

        login = self.unique_login(base_login)
        guest_ou = self.builder.ensure_ou(
            self.directory.base_dn,
            self.config.provisioning.guest_ou,
            {"description": "Unidad Organizacional para usuarios invitados"},
        )
        common_name = sanitize_name(
            f"{GUEST_PROFILE.prefix} {request.first_name} {request.last_name}"
        )
        dn = cn_dn(common_name, guest_ou)
        attributes: Dict[str, Any] = {
            "cn": common_name,
            "givenName": request.first_name,
            "sn": request.last_name,
            "displayName": request.display_name,
            self.directory.login_attribute: login,
            "userPrincipalName": f"{login}@{self.directory.domain}",
            "mail": request.email,
            "description": (request.reason or "").strip() or GUEST_PROFILE.description,
            "title": GUEST_PROFILE.title,
            "employeeType": GUEST_PROFILE.prefix,
        }
        identity = "".join(char for char in (request.identity_card or "") if char.isdigit())
        if identity:
            attributes[self.directory.employee_id_attribute] = identity

        self._create_entry(dn, attributes)
        if request.password:
            self.session.set_password(dn, request.password)
        self.groups.enroll(dn, self.config.provisioning.guest_groups)
        return ProvisionResult(ProvisionStatus.CREATED, login, dn)

    def unique_login(self, base: str) -> str:
        if not self.account_exists(base):
            return base
        for counter in range(1, self.config.provisioning.max_login_attempts + 1):
            suffix = str(counter)
            candidate = f"{base[: MAX_LOGIN_LENGTH - len(suffix)]}{suffix}"
            if not self.account_exists(candidate):
                return candidate
        raise ConflictError(f"Could not find a free login name based on '{base}'.")

    # Utilities -----------------------------------------------------------
    def _create_entry(self, dn: str, attributes: Dict[str, Any]) -> None:
        try:
            self.session.add(dn, self.directory.user_object_classes, attributes)
        except DirectoryOperationError as exc:
            if exc.result_code == RESULT_ENTRY_ALREADY_EXISTS:
                raise ConflictError(f"Directory entry already exists: {dn}") from exc
            raise
        except DirectoryError:
            logger.exception("Creating %s failed", dn)
            raise
        logger.info("Created account entry %s", dn)


__all__ = ["AccountProvisioner", "GUEST_PROFILE", "ROLE_PROFILES", "RoleProfile", "role_profile"]
