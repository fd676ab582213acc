"""In-memory snapshot of the department hierarchy for one provisioning run."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import DepartmentNode, normalize_department_id
from .naming import fallback_department_name, sanitize_name
from .records import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepartmentInfo:
    level: int
    display_name: str


class OrgTreeCache:
    """Department metadata and employees grouped by department id.

    The cache is owned by whoever runs a rebuild; call :meth:`load` at the
    start of every run and :meth:`clear` when the run ends so no department
    name survives a reorganisation.
    """

    def __init__(self, store: RecordStore, fallback_prefix: str = "Departamento"):
        self.store = store
        self.fallback_prefix = fallback_prefix
        self._departments: Dict[str, DepartmentInfo] = {}
        self._employees: Dict[str, List[str]] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> List[DepartmentNode]:
        """Rebuild the snapshot; store failures propagate to the caller."""

        self.clear()
        departments: Dict[str, DepartmentInfo] = {}
        for department_id, level, description in self.store.fetch_departments():
            key = normalize_department_id(department_id)
            if not key or key in departments:
                continue
            display_name = (description or "").strip()
            if not sanitize_name(display_name):
                display_name = fallback_department_name(key, self.fallback_prefix)
                logger.warning(
                    "Department %s has no usable description, using '%s'", key, display_name
                )
            departments[key] = DepartmentInfo(level=level, display_name=display_name)

        employees: Dict[str, List[str]] = {}
        for employee_id, department_id in self.store.fetch_employee_departments():
            employees.setdefault(normalize_department_id(department_id), []).append(employee_id)

        self._departments = departments
        self._employees = employees
        self._loaded = True
        logger.info(
            "Org tree cache loaded: %s departments, %s employees",
            len(departments),
            sum(len(ids) for ids in employees.values()),
        )
        return self.nodes()

    def clear(self) -> None:
        self._departments = {}
        self._employees = {}
        self._loaded = False

    def nodes(self) -> List[DepartmentNode]:
        return [
            DepartmentNode(
                id=department_id,
                display_name=info.display_name,
                level=info.level,
                employee_ids=tuple(self._employees.get(department_id, ())),
            )
            for department_id, info in self._departments.items()
        ]

    def department(self, department_id: str) -> Optional[DepartmentInfo]:
        return self._departments.get(normalize_department_id(department_id))

    def employees_for(self, department_id: str) -> List[str]:
        return list(self._employees.get(normalize_department_id(department_id), []))


__all__ = ["DepartmentInfo", "OrgTreeCache"]
