"""Pytest fixtures: an in-memory stand-in for the Supabase client"""

import re
from contextlib import ExitStack
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch
from uuid import uuid4

import pytest
from postgrest.exceptions import APIError

# Modules that import the shared client with `from app.config import supabase`
SUPABASE_MODULES = [
    "app.services.availability",
    "app.services.professionals",
    "app.services.patients",
    "app.services.appointments",
    "app.services.assistant",
]

INACTIVE_STATUSES = ("cancelled", "no_show")


def _norm(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    return str(value)


def _hhmm(value: Any) -> str:
    return str(value)[:5]


def _like_to_regex(pattern: str) -> str:
    """SQL LIKE semantics: % and _ are wildcards, backslash escapes"""
    out = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            out.append(re.escape(next(chars, "\\")))
        elif ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return "".join(out)


class FakeResponse:
    def __init__(self, data: Any):
        self.data = data


class FakeQuery:
    """Subset of the PostgREST query builder used by the services"""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orders: List[tuple] = []
        self.row_limit: Optional[int] = None
        self.op = "select"
        self.payload: Any = None

    # operations
    def select(self, columns: str = "*"):
        self.op = "select"
        return self

    def insert(self, payload: Any):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload: Dict[str, Any]):
        self.op = "update"
        self.payload = payload
        return self

    # filters
    def eq(self, column: str, value: Any):
        self.filters.append(lambda row: _norm(row.get(column)) == _norm(value))
        return self

    def neq(self, column: str, value: Any):
        self.filters.append(lambda row: _norm(row.get(column)) != _norm(value))
        return self

    def in_(self, column: str, values: List[Any]):
        allowed = {_norm(v) for v in values}
        self.filters.append(lambda row: _norm(row.get(column)) in allowed)
        return self

    def gte(self, column: str, value: Any):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) >= str(value))
        return self

    def lte(self, column: str, value: Any):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) <= str(value))
        return self

    def ilike(self, column: str, pattern: str):
        regex = re.compile("^" + _like_to_regex(pattern) + "$", re.IGNORECASE | re.DOTALL)
        self.filters.append(lambda row: bool(regex.match(str(row.get(column) or ""))))
        return self

    # modifiers
    def order(self, column: str, desc: bool = False):
        self.orders.append((column, desc))
        return self

    def limit(self, count: int):
        self.row_limit = count
        return self

    def _matching(self) -> List[Dict[str, Any]]:
        return [row for row in self.db.tables.setdefault(self.table_name, []) if all(f(row) for f in self.filters)]

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table_name, self.op))

        if self.op == "insert":
            return FakeResponse(self.db.insert(self.table_name, self.payload))

        if self.op == "update":
            updated = []
            for row in self._matching():
                row.update(deepcopy(self.payload))
                updated.append(deepcopy(row))
            return FakeResponse(updated)

        rows = self._matching()
        for column, desc in reversed(self.orders):
            rows = sorted(rows, key=lambda row: str(row.get(column) or ""), reverse=desc)
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return FakeResponse(deepcopy(rows))


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.name, "rpc"))
        if self.db.rpc_error:
            raise self.db.rpc_error
        if self.name == "is_holiday":
            return FakeResponse([{"is_holiday": self.params["p_date"] in self.db.holidays}])
        return FakeResponse([])


class FakeSupabase:
    """
    In-memory tables with the appointments partial unique index:
    (professional_id, appointment_date, start_time) among active rows.
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.holidays: set = set()
        self.rpc_error: Optional[Exception] = None
        self.insert_errors: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> FakeRpc:
        return FakeRpc(self, name, params)

    def seed(self, table: str, **row: Any) -> Dict[str, Any]:
        row.setdefault("id", str(uuid4()))
        self.tables.setdefault(table, []).append(row)
        return row

    def fail_next_insert(self, table: str, error: Exception) -> None:
        self.insert_errors.setdefault(table, []).append(error)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])

    def _violates_slot_index(self, new_row: Dict[str, Any]) -> bool:
        if new_row.get("status") in INACTIVE_STATUSES:
            return False
        for row in self.rows("appointments"):
            if (
                row.get("status") not in INACTIVE_STATUSES
                and _norm(row.get("professional_id")) == _norm(new_row.get("professional_id"))
                and row.get("appointment_date") == new_row.get("appointment_date")
                and _hhmm(row.get("start_time")) == _hhmm(new_row.get("start_time"))
            ):
                return True
        return False

    def insert(self, table: str, payload: Any) -> List[Dict[str, Any]]:
        pending = self.insert_errors.get(table)
        if pending:
            raise pending.pop(0)

        inserted = []
        for raw in payload if isinstance(payload, list) else [payload]:
            row = deepcopy(raw)
            if table == "appointments" and self._violates_slot_index(row):
                raise APIError({
                    "message": 'duplicate key value violates unique constraint "appointments_unique_active_slot"',
                    "code": "23505",
                    "details": "Key (professional_id, appointment_date, start_time) already exists.",
                    "hint": None,
                })
            row.setdefault("id", str(uuid4()))
            row.setdefault("created_at", datetime.now().isoformat())
            self.tables.setdefault(table, []).append(row)
            inserted.append(deepcopy(row))
        return inserted


@pytest.fixture
def fake_db():
    """Swap the shared Supabase client for an in-memory fake in every service"""
    db = FakeSupabase()
    with ExitStack() as stack:
        for module in SUPABASE_MODULES:
            stack.enter_context(patch(f"{module}.supabase", db))
        yield db


WEDNESDAY_AFTERNOONS = {
    "monday": {"enabled": False, "slots": []},
    "tuesday": {"enabled": False, "slots": []},
    "wednesday": {"enabled": True, "slots": [{"start": "13:00", "end": "17:00"}]},
    "thursday": {"enabled": False, "slots": []},
    "friday": {"enabled": False, "slots": []},
    "saturday": {"enabled": False, "slots": []},
    "sunday": {"enabled": False, "slots": []},
}


@pytest.fixture
def clinic(fake_db, test_clinic_id):
    return fake_db.seed("clinics", id=test_clinic_id, name="Clínica Sindical")


@pytest.fixture
def alcides(fake_db, clinic):
    """Professional open Wednesdays 13:00-17:00 with 30-minute appointments"""
    return fake_db.seed(
        "professionals",
        clinic_id=clinic["id"],
        name="Alcides Ferreira",
        specialty="Clínico Geral",
        is_active=True,
        schedule=deepcopy(WEDNESDAY_AFTERNOONS),
        appointment_duration=30,
    )


@pytest.fixture
def patient(fake_db, clinic, test_patient_cpf):
    return fake_db.seed(
        "patients",
        clinic_id=clinic["id"],
        name="Maria Souza",
        cpf="52998224725",
        phone="5511999990000",
        is_active=True,
    )


@pytest.fixture
def monday_morning():
    """Monday 2026-10-19 09:00 clinic time; the next Wednesday is 2026-10-21"""
    return datetime(2026, 10, 19, 9, 0)
