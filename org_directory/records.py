"""Read access to the authoritative relational store."""
from __future__ import annotations

import contextlib
import logging
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    false,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import DatabaseConfig
from .errors import RecordStoreError
from .models import EmployeeRecord, normalize_department_id

logger = logging.getLogger(__name__)

metadata = MetaData()

# Staffing plan: one or more rows per department.
departments = Table(
    "RH_Plantilla",
    metadata,
    Column("Id_Direccion", String(20), nullable=False),
    Column("Desc_Direccion", String(255)),
    Column("Nivel", Integer, default=0),
)

employees = Table(
    "Empleados_Gral",
    metadata,
    Column("No_CI", String(20), primary_key=True),
    Column("Id_Expediente", String(20)),
    Column("Id_Direccion", String(20)),
    Column("Nombre", String(100)),
    Column("Apellido_1", String(100)),
    Column("Apellido_2", String(100)),
    Column("Docente", Boolean, default=False),
    Column("Investigador", Boolean, default=False),
    Column("Baja", Boolean, default=False),
)

devices = Table(
    "Dispositivos",
    metadata,
    Column("Id", Integer, primary_key=True, autoincrement=True),
    Column("MAC", String(17), nullable=False),
    Column("Modelo", String(50)),
    Column("Tipo", String(20)),
    Column("Usuario", String(64), nullable=False, index=True),
)


def _is_active():
    return or_(employees.c.Baja.is_(None), employees.c.Baja == false())


class RecordStore:
    """Plain synchronous queries against department, employee and device rows."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "RecordStore":
        try:
            engine = create_engine(config.url, echo=config.echo, pool_pre_ping=True)
        except (SQLAlchemyError, ValueError) as exc:
            raise RecordStoreError(f"Invalid database configuration: {exc}") from exc
        return cls(engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextlib.contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Relational store query failed while %s: %s", action, exc)
            raise RecordStoreError(f"Unable to query the relational store while {action}: {exc}") from exc

    # Departments ---------------------------------------------------------
    def fetch_departments(self) -> List[Tuple[str, int, Optional[str]]]:
        """All department rows ordered by hierarchy level."""

        statement = select(
            departments.c.Id_Direccion, departments.c.Nivel, departments.c.Desc_Direccion
        ).order_by(departments.c.Nivel, departments.c.Id_Direccion)
        with self._guard("loading departments"), self.engine.connect() as connection:
            rows = connection.execute(statement).all()
        return [(str(row[0]), int(row[1] or 0), row[2]) for row in rows]

    def get_department_description(self, department_id: str) -> Optional[str]:
        normalized = normalize_department_id(department_id)
        statement = (
            select(departments.c.Desc_Direccion)
            .where(func.upper(func.trim(departments.c.Id_Direccion)) == normalized)
            .order_by(departments.c.Id_Direccion)
            .limit(1)
        )
        with self._guard("loading a department"), self.engine.connect() as connection:
            return connection.execute(statement).scalar()

    # Employees -----------------------------------------------------------
    def fetch_employee_departments(self) -> List[Tuple[str, str]]:
        """``(employee id, department id)`` for every employee record."""

        statement = select(employees.c.No_CI, employees.c.Id_Direccion).order_by(employees.c.No_CI)
        with self._guard("loading employees"), self.engine.connect() as connection:
            rows = connection.execute(statement).all()
        return [(str(row[0]).strip(), str(row[1] or "")) for row in rows]

    def get_employee(self, person_id: str) -> Optional[EmployeeRecord]:
        statement = select(employees).where(employees.c.No_CI == person_id, _is_active())
        with self._guard("loading an employee"), self.engine.connect() as connection:
            row = connection.execute(statement).mappings().first()
        if row is None:
            return None
        return EmployeeRecord(
            id=row["No_CI"],
            department_id=row["Id_Direccion"],
            first_name=row["Nombre"],
            last_name=row["Apellido_1"],
            second_last_name=row["Apellido_2"],
            employee_number=row["Id_Expediente"],
            teaches=bool(row["Docente"]),
            researches=bool(row["Investigador"]),
        )

    def active_employee_ids(self) -> List[str]:
        statement = select(employees.c.No_CI).where(_is_active()).order_by(employees.c.No_CI)
        with self._guard("listing active employees"), self.engine.connect() as connection:
            return [str(value).strip() for value in connection.execute(statement).scalars()]

    # Devices -------------------------------------------------------------
    def delete_devices(self, login: str) -> int:
        statement = delete(devices).where(devices.c.Usuario == login)
        with self._guard("deleting devices"), self.engine.begin() as connection:
            result = connection.execute(statement)
        return int(result.rowcount or 0)


__all__ = ["RecordStore", "departments", "devices", "employees", "metadata"]
