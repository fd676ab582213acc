"""Directory session primitives on top of ldap3."""
from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

import yaml
from ldap3 import (
    ALL,
    BASE,
    LEVEL,
    MOCK_SYNC,
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
    SUBTREE,
    Connection,
    Server,
)
from ldap3.core.exceptions import (
    LDAPCommunicationError,
    LDAPException,
    LDAPResponseTimeoutError,
    LDAPServerPoolExhaustedError,
)
from ldap3.core.results import RESULT_SIZE_LIMIT_EXCEEDED, RESULT_SUCCESS

from .config import DirectoryConfig
from .errors import DirectoryConnectionError, DirectoryError, DirectoryOperationError
from .models import DirectoryEntry

logger = logging.getLogger(__name__)

PAGE_SIZE = 500

_MOCK_SERVERS: Dict[str, Server] = {}
_MOCK_LOCK = threading.Lock()

# Raised when the server cannot be reached or drops the connection; worth a retry.
_TRANSIENT_EXCEPTIONS = (
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
    LDAPServerPoolExhaustedError,
)


def _session_error(message: str, exc: LDAPException) -> DirectoryError:
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return DirectoryConnectionError(message)
    return DirectoryError(message)


def _load_mock_data(path: Optional[Path]) -> Dict[str, Any]:
    if not path or not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _mock_connection(config: DirectoryConfig) -> Connection:
    """Offline directory backed by ldap3's MOCK_SYNC strategy.

    The DIT is shared by every session of the process that uses the same
    ``server_uri`` so changes survive between pooled sessions.
    """

    with _MOCK_LOCK:
        server = _MOCK_SERVERS.get(config.server_uri)
        seed = server is None
        if seed:
            server = Server(config.server_uri[len("mock://") :] or "mock_directory")
            _MOCK_SERVERS[config.server_uri] = server

        connection = Connection(
            server,
            user=config.bind_dn,
            password=config.password,
            client_strategy=MOCK_SYNC,
        )
        if seed:
            data = _load_mock_data(config.mock_data_file)
            credentials = data.get("credentials") or {config.bind_dn: config.password}
            for user_dn, password in credentials.items():
                connection.strategy.add_entry(user_dn, {"userPassword": password, "sn": "service"})
            for item in data.get("entries") or []:
                connection.strategy.add_entry(item["dn"], dict(item.get("attributes") or {}))
    return connection


class LDAPSession:
    """One connection to the directory server with structured errors."""

    def __init__(self, config: DirectoryConfig, connection: Optional[Connection] = None):
        self.config = config
        if connection is not None:
            self.connection = connection
        elif config.is_mock:
            self.connection = _mock_connection(config)
        else:
            self.server = Server(
                config.server_uri,
                use_ssl=config.use_ssl,
                get_info=ALL,
                connect_timeout=config.connect_timeout,
            )
            self.connection = Connection(self.server, user=config.bind_dn, password=config.password)

    def __enter__(self) -> "LDAPSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.unbind()

    # Primitives ----------------------------------------------------------
    def authenticate(self, bind_dn: Optional[str] = None, password: Optional[str] = None) -> None:
        if bind_dn is not None:
            self.connection.user = bind_dn
            self.connection.password = password
        user = self.connection.user
        try:
            bound = self.connection.bind()
        except LDAPException as exc:
            raise _session_error(f"Unable to bind to the directory server: {exc}", exc) from exc
        if not bound:
            raise self._operation_error("bind", user)
        logger.debug("Bound to directory as %s", user)

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
        attribute_list = list(attributes) if attributes else None
        try:
            if paged:
                responses = list(
                    self.connection.extend.standard.paged_search(
                        search_base=base_dn,
                        search_filter=search_filter,
                        search_scope=scope,
                        attributes=attribute_list,
                        paged_size=PAGE_SIZE,
                        generator=True,
                    )
                )
            else:
                self.connection.search(
                    search_base=base_dn,
                    search_filter=search_filter,
                    search_scope=scope,
                    attributes=attribute_list,
                    size_limit=size_limit,
                    time_limit=time_limit,
                )
                responses = list(self.connection.response or [])
        except LDAPException as exc:
            raise _session_error(f"Directory search failed: {exc}", exc) from exc

        code = (self.connection.result or {}).get("result", RESULT_SUCCESS)
        # A truncated result is only acceptable when the caller asked for a cap.
        if code == RESULT_SIZE_LIMIT_EXCEEDED and size_limit and not paged:
            code = RESULT_SUCCESS
        if code != RESULT_SUCCESS:
            raise self._operation_error("search", base_dn)

        return [
            DirectoryEntry(str(item.get("dn")), item.get("attributes") or {})
            for item in responses
            if item.get("type") == "searchResEntry"
        ]

    def add(self, dn: str, object_class: Iterable[str], attributes: Mapping[str, Any]) -> None:
        payload = {key: value for key, value in attributes.items() if value not in (None, "", [])}
        self._run("add", dn, lambda: self.connection.add(dn, object_class=list(object_class), attributes=payload))

    def modify(self, dn: str, attribute: str, values: Iterable[str], operation: str = MODIFY_ADD) -> None:
        changes = {attribute: [(operation, list(values))]}
        self._run("modify", dn, lambda: self.connection.modify(dn, changes))

    def delete(self, dn: str) -> None:
        self._run("delete", dn, lambda: self.connection.delete(dn))

    def set_password(self, dn: str, password: str) -> None:
        if self.config.is_mock:
            self.modify(dn, "userPassword", [password], MODIFY_REPLACE)
            return
        self._run(
            "password modify",
            dn,
            lambda: self.connection.extend.microsoft.modify_password(dn, password),
        )

    def unbind(self) -> None:
        try:
            if self.connection.bound:
                self.connection.unbind()
        except LDAPException as exc:
            logger.warning("Error closing directory connection: %s", exc)

    # Utilities -----------------------------------------------------------
    def _run(self, operation: str, dn: str, call: Callable[[], Any]) -> None:
        try:
            succeeded = call()
        except LDAPException as exc:
            raise _session_error(f"Directory {operation} failed on '{dn}': {exc}", exc) from exc
        if not succeeded:
            raise self._operation_error(operation, dn)

    def _operation_error(self, operation: str, dn: Optional[str]) -> DirectoryOperationError:
        result = self.connection.result or {}
        return DirectoryOperationError(
            operation,
            result.get("result"),
            description=result.get("description", ""),
            message=result.get("message", ""),
            dn=dn,
        )


class SessionPool:
    """Bounds the number of simultaneous directory sessions.

    ``session()`` authenticates a fresh session with the service
    credentials and always unbinds it and frees the slot on exit.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        factory: Optional[Callable[[], LDAPSession]] = None,
    ):
        self.config = config
        self._factory = factory or (lambda: LDAPSession(config))
        self._slots = threading.BoundedSemaphore(max(1, config.pool_size))

    @contextlib.contextmanager
    def session(self) -> Iterator[LDAPSession]:
        with self._slots:
            session = self._factory()
            try:
                session.authenticate()
                yield session
            finally:
                session.unbind()


__all__ = [
    "BASE",
    "LEVEL",
    "LDAPSession",
    "MODIFY_ADD",
    "MODIFY_DELETE",
    "SUBTREE",
    "SessionPool",
]
