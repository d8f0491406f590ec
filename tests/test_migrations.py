"""Revision 001 DDL stays in step with the ORM tables it was written for."""

from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest

import shipment_engine.models  # noqa: F401
from shipment_engine.core.database import Base

REVISION = (
    Path(__file__).resolve().parents[1]
    / "services"
    / "shipment_service"
    / "alembic"
    / "versions"
    / "001_create_shipment_engine.py"
)


class RecordingOp:
    def __init__(self):
        self.statements: list[str] = []

    def execute(self, sql: str) -> None:
        self.statements.append(" ".join(sql.split()))


def _load_revision():
    spec = importlib.util.spec_from_file_location("revision_001", REVISION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture(scope="module")
def ddl() -> list[str]:
    module = _load_revision()
    recorder = RecordingOp()
    module.op = recorder
    module.upgrade()
    return recorder.statements


def _create_table(ddl: list[str], name: str) -> str:
    prefix = f"CREATE TABLE {name} ("
    [statement] = [s for s in ddl if s.startswith(prefix)]
    return statement


def test_every_model_table_and_column_is_created(ddl):
    for table in Base.metadata.sorted_tables:
        statement = _create_table(ddl, table.name)
        for column in table.columns:
            assert f" {column.name} " in statement, f"{table.name}.{column.name}"


def test_foreign_keys_keep_their_delete_rules(ddl):
    for table in Base.metadata.sorted_tables:
        statement = _create_table(ddl, table.name)
        for fk in table.foreign_keys:
            column = fk.parent.name
            target = fk.column.table.name
            expected = (
                f"CONSTRAINT fk_{table.name}_{column}_{target} "
                f"REFERENCES {target}(id) ON DELETE {fk.ondelete}"
            )
            assert expected in statement, expected


def test_partial_unique_indexes_are_created(ddl):
    assert (
        "CREATE UNIQUE INDEX uq_driver_assignments_active_leg "
        "ON driver_assignments (shipment_id, assignment_type) WHERE is_active;"
    ) in ddl
    assert (
        "CREATE UNIQUE INDEX uq_payment_intents_open_per_shipment "
        "ON payment_intents (shipment_id) WHERE status = 'PENDING';"
    ) in ddl


def test_downgrade_drops_children_before_parents():
    module = _load_revision()
    recorder = RecordingOp()
    module.op = recorder
    module.downgrade()

    dropped = [s.split()[-1].rstrip(";") for s in recorder.statements]
    assert set(dropped) == set(Base.metadata.tables)
    position = {name: i for i, name in enumerate(dropped)}
    for table in Base.metadata.sorted_tables:
        for fk in table.foreign_keys:
            parent = fk.column.table.name
            if parent != table.name:
                assert position[table.name] < position[parent], (table.name, parent)
