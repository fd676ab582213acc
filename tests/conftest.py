from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pytest
from ldap3 import BASE, LEVEL, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, SUBTREE
from ldap3.core.results import (
    RESULT_ATTRIBUTE_OR_VALUE_EXISTS,
    RESULT_ENTRY_ALREADY_EXISTS,
    RESULT_NO_SUCH_ATTRIBUTE,
    RESULT_NO_SUCH_OBJECT,
    RESULT_NOT_ALLOWED_ON_NON_LEAF,
    RESULT_SIZE_LIMIT_EXCEEDED,
)
from sqlalchemy import create_engine, insert

from org_directory.config import (
    AppConfig,
    DatabaseConfig,
    DirectoryConfig,
    ProvisioningConfig,
)
from org_directory.errors import DirectoryOperationError
from org_directory.models import DirectoryEntry
from org_directory.naming import normalize_dn, parent_dn
from org_directory.records import RecordStore, departments, devices, employees, metadata

BASE_DN = "DC=uniss,DC=edu,DC=cu"
GROUPS_OU = f"OU=_Grupos,{BASE_DN}"
MAIL_GROUP = f"CN=correo_nac,{GROUPS_OU}"
WIFI_GROUP = f"CN=wifi_users,{GROUPS_OU}"
EVERYONE_GROUP = f"CN=UNISS-Everyone,{GROUPS_OU}"

_HEX_ESCAPE = re.compile(r"\\([0-9a-fA-F]{2})")


def _unescape(value: str) -> str:
    return _HEX_ESCAPE.sub(lambda match: chr(int(match.group(1), 16)), value)


def parse_filter(text: str):
    node, position = _parse(text, 0)
    if position != len(text):
        raise ValueError(f"Trailing characters in filter {text!r}")
    return node


def _parse(text: str, position: int):
    if text[position] != "(":
        raise ValueError(f"Malformed filter {text!r} at {position}")
    position += 1
    operator = text[position]
    if operator in "&|":
        position += 1
        children = []
        while text[position] == "(":
            child, position = _parse(text, position)
            children.append(child)
        return (operator, children), position + 1
    if operator == "!":
        child, position = _parse(text, position + 1)
        return ("!", [child]), position + 1
    end = text.index(")", position)
    attribute, value = text[position:end].split("=", 1)
    return ("=", attribute.lower(), value), end + 1


def _matches(node, attributes: Mapping[str, List[str]]) -> bool:
    kind = node[0]
    if kind == "&":
        return all(_matches(child, attributes) for child in node[1])
    if kind == "|":
        return any(_matches(child, attributes) for child in node[1])
    if kind == "!":
        return not _matches(node[1][0], attributes)
    _, attribute, raw = node
    values = [value.lower() for value in attributes.get(attribute, [])]
    if raw == "*":
        return bool(values)
    if "*" in raw:
        pattern = ".*".join(re.escape(_unescape(part).lower()) for part in raw.split("*"))
        return any(re.fullmatch(pattern, value) for value in values)
    target = _unescape(raw).lower()
    return target in values


class FakeSession:
    """In-memory stand-in for ``LDAPSession`` with the same result-code contract."""

    def __init__(self, base_dn: str = BASE_DN, server_size_limit: int = 0):
        # Server-side cap on unpaged searches, like MaxPageSize on AD.
        self.server_size_limit = server_size_limit
        self._entries: Dict[str, Tuple[str, Dict[str, List[str]]]] = {}
        self.operations: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self.passwords: Dict[str, str] = {}
        self.bound = False
        self.seed(base_dn, ["top", "domain"], {})

    # Test helpers --------------------------------------------------------
    def seed(self, dn: str, object_classes: Iterable[str], attributes: Mapping[str, Any]) -> None:
        self._entries[normalize_dn(dn)] = (dn, self._normalize(object_classes, attributes))

    def fail(self, operation: str, dn: str, code: int) -> None:
        self.failures[(operation, normalize_dn(dn))] = code

    def has(self, dn: str) -> bool:
        return normalize_dn(dn) in self._entries

    def get(self, dn: str) -> Dict[str, List[str]]:
        return self._entries[normalize_dn(dn)][1]

    def dns(self) -> List[str]:
        return [dn for dn, _ in self._entries.values()]

    def ops(self, operation: str) -> List[str]:
        return [dn for name, dn in self.operations if name == operation]

    # Session contract ----------------------------------------------------
    def authenticate(self, bind_dn: Optional[str] = None, password: Optional[str] = None) -> None:
        self.bound = True

    def unbind(self) -> None:
        self.bound = False

    def search(
        self,
        base_dn: str,
        search_filter: str,
        scope: str = SUBTREE,
        attributes: Optional[Iterable[str]] = None,
        size_limit: int = 0,
        time_limit: int = 0,
        paged: bool = False,
    ) -> List[DirectoryEntry]:
        self._check("search", base_dn)
        base_key = normalize_dn(base_dn)
        if base_key not in self._entries:
            raise self._error("search", base_dn, RESULT_NO_SUCH_OBJECT)
        node = parse_filter(search_filter)
        results = []
        for key, (dn, attrs) in self._entries.items():
            if scope == BASE:
                in_scope = key == base_key
            elif scope == LEVEL:
                in_scope = normalize_dn(parent_dn(dn)) == base_key
            else:
                in_scope = key == base_key or key.endswith("," + base_key)
            if in_scope and _matches(node, attrs):
                results.append(DirectoryEntry(dn, {name: list(values) for name, values in attrs.items()}))
        if paged:
            return results
        if self.server_size_limit and len(results) > self.server_size_limit:
            if not size_limit:
                raise self._error("search", base_dn, RESULT_SIZE_LIMIT_EXCEEDED)
            size_limit = min(size_limit, self.server_size_limit)
        if size_limit:
            results = results[:size_limit]
        return results

    def add(self, dn: str, object_class: Iterable[str], attributes: Mapping[str, Any]) -> None:
        self._check("add", dn)
        key = normalize_dn(dn)
        if key in self._entries:
            raise self._error("add", dn, RESULT_ENTRY_ALREADY_EXISTS)
        if normalize_dn(parent_dn(dn)) not in self._entries:
            raise self._error("add", dn, RESULT_NO_SUCH_OBJECT)
        payload = {name: value for name, value in attributes.items() if value not in (None, "", [])}
        self._entries[key] = (dn, self._normalize(object_class, payload))
        self.operations.append(("add", dn))

    def modify(self, dn: str, attribute: str, values: Iterable[str], operation: str = MODIFY_ADD) -> None:
        self._check("modify", dn)
        key = normalize_dn(dn)
        if key not in self._entries:
            raise self._error("modify", dn, RESULT_NO_SUCH_OBJECT)
        current = self._entries[key][1].setdefault(attribute.lower(), [])
        for value in values:
            present = [item for item in current if item.lower() == str(value).lower()]
            if operation == MODIFY_ADD:
                if present:
                    raise self._error("modify", dn, RESULT_ATTRIBUTE_OR_VALUE_EXISTS)
                current.append(str(value))
            elif operation == MODIFY_DELETE:
                if not present:
                    raise self._error("modify", dn, RESULT_NO_SUCH_ATTRIBUTE)
                current.remove(present[0])
            elif operation == MODIFY_REPLACE:
                current[:] = [str(value)]
        self.operations.append(("modify", dn))

    def delete(self, dn: str) -> None:
        self._check("delete", dn)
        key = normalize_dn(dn)
        if key not in self._entries:
            raise self._error("delete", dn, RESULT_NO_SUCH_OBJECT)
        if any(normalize_dn(parent_dn(other)) == key for other, _ in self._entries.values()):
            raise self._error("delete", dn, RESULT_NOT_ALLOWED_ON_NON_LEAF)
        del self._entries[key]
        self.operations.append(("delete", dn))

    def set_password(self, dn: str, password: str) -> None:
        self._check("password modify", dn)
        if normalize_dn(dn) not in self._entries:
            raise self._error("password modify", dn, RESULT_NO_SUCH_OBJECT)
        self.passwords[normalize_dn(dn)] = password
        self.operations.append(("password", dn))

    # Internals -----------------------------------------------------------
    @staticmethod
    def _normalize(object_classes: Iterable[str], attributes: Mapping[str, Any]) -> Dict[str, List[str]]:
        normalized: Dict[str, List[str]] = {"objectclass": [str(item) for item in object_classes]}
        for name, value in attributes.items():
            if isinstance(value, (list, tuple, set)):
                normalized[name.lower()] = [str(item) for item in value]
            else:
                normalized[name.lower()] = [str(value)]
        return normalized

    def _check(self, operation: str, dn: str) -> None:
        code = self.failures.get((operation, normalize_dn(dn)))
        if code is not None:
            raise self._error(operation, dn, code)

    @staticmethod
    def _error(operation: str, dn: str, code: int) -> DirectoryOperationError:
        return DirectoryOperationError(operation, code, description=f"result {code}", dn=dn)


def seed_group(session: FakeSession, dn: str, name: str, members: Iterable[str] = (), description: str = "") -> None:
    attributes: Dict[str, Any] = {"cn": name, "sAMAccountName": name, "member": list(members)}
    if description:
        attributes["description"] = description
    session.seed(dn, ["top", "group"], attributes)


def seed_user(session: FakeSession, dn: str, login: str, employee_id: Optional[str] = None) -> None:
    attributes: Dict[str, Any] = {"cn": dn.split(",", 1)[0][3:], "sAMAccountName": login}
    if employee_id:
        attributes["employeeID"] = employee_id
    session.seed(dn, ["top", "person", "organizationalPerson", "user"], attributes)


@pytest.fixture
def directory_config() -> DirectoryConfig:
    return DirectoryConfig(
        server_uri="ldaps://dc01.test",
        bind_dn=f"CN=svc,{BASE_DN}",
        password="secret",
        base_dn=BASE_DN,
        group_search_base=GROUPS_OU,
        mail_domain="uniss.edu.cu",
    )


@pytest.fixture
def app_config(directory_config: DirectoryConfig) -> AppConfig:
    return AppConfig(
        directory=directory_config,
        database=DatabaseConfig(url="sqlite://"),
        provisioning=ProvisioningConfig(
            staff_groups=(MAIL_GROUP, WIFI_GROUP),
            guest_groups=(EVERYONE_GROUP,),
        ),
    )


@pytest.fixture
def session() -> FakeSession:
    fake = FakeSession()
    fake.seed(GROUPS_OU, ["top", "organizationalUnit"], {"ou": "_Grupos"})
    for dn, name in ((MAIL_GROUP, "correo_nac"), (WIFI_GROUP, "wifi_users"), (EVERYONE_GROUP, "UNISS-Everyone")):
        seed_group(fake, dn, name)
    return fake


@pytest.fixture
def engine():
    engine = create_engine("sqlite://")
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> RecordStore:
    return RecordStore(engine)


def add_department(engine, department_id: str, description: Optional[str], level: int = 1) -> None:
    with engine.begin() as connection:
        connection.execute(
            insert(departments).values(
                Id_Direccion=department_id, Desc_Direccion=description, Nivel=level
            )
        )


def add_employee(
    engine,
    person_id: str,
    department_id: str,
    first_name: str = "juan",
    last_name: str = "pérez",
    second_last_name: Optional[str] = "garcía",
    teaches: bool = False,
    researches: bool = False,
    retired: Optional[bool] = False,
    record_number: Optional[str] = None,
) -> None:
    with engine.begin() as connection:
        connection.execute(
            insert(employees).values(
                No_CI=person_id,
                Id_Expediente=record_number,
                Id_Direccion=department_id,
                Nombre=first_name,
                Apellido_1=last_name,
                Apellido_2=second_last_name,
                Docente=teaches,
                Investigador=researches,
                Baja=retired,
            )
        )


def add_device(engine, login: str, mac: str = "AA:BB:CC:DD:EE:FF") -> None:
    with engine.begin() as connection:
        connection.execute(insert(devices).values(MAC=mac, Modelo="X1", Tipo="laptop", Usuario=login))
