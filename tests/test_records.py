import pytest
from sqlalchemy import create_engine

from org_directory.errors import RecordStoreError
from org_directory.records import RecordStore

from conftest import add_department, add_device, add_employee


def test_fetch_departments_ordered_by_level(engine, store):
    add_department(engine, "D02", "Facultad de Ingenieria", level=2)
    add_department(engine, "D01", "Rectorado", level=1)

    assert store.fetch_departments() == [
        ("D01", 1, "Rectorado"),
        ("D02", 2, "Facultad de Ingenieria"),
    ]


def test_department_description_matches_trimmed_id(engine, store):
    add_department(engine, " d05 ", "Informatica")

    assert store.get_department_description("D05") == "Informatica"
    assert store.get_department_description("D99") is None


def test_get_employee_skips_retired(engine, store):
    add_employee(engine, "850101123456789", "D01", teaches=True, record_number="E-17")
    add_employee(engine, "850101123456790", "D01", retired=True)
    add_employee(engine, "850101123456791", "D01", retired=None)

    employee = store.get_employee("850101123456789")
    assert employee.first_name == "Juan"
    assert employee.surnames == "Pérez García"
    assert employee.employee_number == "E-17"
    assert employee.teaches and not employee.researches

    assert store.get_employee("850101123456790") is None
    assert store.active_employee_ids() == ["850101123456789", "850101123456791"]


def test_delete_devices_returns_count(engine, store):
    add_device(engine, "jperez", "AA:AA:AA:AA:AA:01")
    add_device(engine, "jperez", "AA:AA:AA:AA:AA:02")
    add_device(engine, "other")

    assert store.delete_devices("jperez") == 2
    assert store.delete_devices("jperez") == 0


def test_query_failures_become_record_store_errors():
    store = RecordStore(create_engine("sqlite://"))
    with pytest.raises(RecordStoreError, match="loading departments"):
        store.fetch_departments()
