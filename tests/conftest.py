# tests/conftest.py
import threading
import time

import pytest
from sqlalchemy.exc import IntegrityError

from agentfleet.backends.interfaces import IVMBackend, MachineStatus
from agentfleet.database import models
from agentfleet.database.database import create_db_engine, create_session_factory
from agentfleet.database.migrations import apply_migrations
from agentfleet.repositories.interfaces import IMachineRepository
from agentfleet.services.exceptions import BackendFailure

MiB = 1024 * 1024

# ===================================================================
#  테스트를 위한 가짜 객체
# ===================================================================

class InMemoryMachineRepository(IMachineRepository):
    """
    스레드 안전한 메모리 기반 레지스트리.
    실제 DB처럼 행(row)을 복사해 저장하므로, 반환된 객체를 고쳐도 저장된 값은 바뀌지 않습니다.
    """
    FIELDS = ("id", "name", "label", "state", "version", "created_at", "modified_at", "snapshot_id")

    def __init__(self):
        self._rows = {}
        self._lock = threading.Lock()
        self.calls = []   # 모든 호출 (읽기 포함)
        self.writes = []  # 쓰기 호출만

    def _to_row(self, machine):
        return {f: getattr(machine, f) for f in self.FIELDS}

    def seed(self, **row):
        """호출 기록 없이 테스트용 데이터를 넣습니다."""
        row.setdefault("name", f"{row['label']}-{row['id'][:8]}")
        row.setdefault("version", 1)
        row.setdefault("created_at", None)
        row.setdefault("modified_at", None)
        row.setdefault("snapshot_id", None)
        self._rows[row["id"]] = row

    def row(self, machine_id):
        return dict(self._rows[machine_id])

    def list_all(self):
        with self._lock:
            self.calls.append(("list_all",))
            return [models.Machine(**r) for r in self._rows.values()]

    def find_by_id(self, machine_id):
        with self._lock:
            self.calls.append(("find_by_id", machine_id))
            row = self._rows.get(machine_id)
            return models.Machine(**row) if row else None

    def list_by_label_and_state(self, label, state):
        with self._lock:
            self.calls.append(("list_by_label_and_state", label, state))
            return [models.Machine(**r) for r in self._rows.values() if r["label"] == label and r["state"] == state]

    def count_by_state(self, state):
        with self._lock:
            self.calls.append(("count_by_state", state))
            return sum(1 for r in self._rows.values() if r["state"] == state)

    def create(self, machine):
        with self._lock:
            self.calls.append(("create", machine.id))
            if machine.id in self._rows:
                raise IntegrityError("INSERT INTO machines", {}, Exception("UNIQUE constraint failed"))
            self._rows[machine.id] = self._to_row(machine)
            self.writes.append(("create", machine.id))
            return machine

    def update(self, machine_id, machine, expected_version):
        with self._lock:
            self.calls.append(("update", machine_id))
            row = self._rows.get(machine_id)
            if row is None or row["version"] != expected_version:
                return False
            self._rows[machine_id] = self._to_row(machine)
            self.writes.append(("update", machine_id))
            return True

    def delete(self, machine):
        with self._lock:
            self.calls.append(("delete", machine.id))
            if self._rows.pop(machine.id, None) is None:
                return False
            self.writes.append(("delete", machine.id))
            return True


class FakeBackend(IVMBackend):
    """실제 프로세스를 띄우지 않고 호출만 기록하는 VM 백엔드."""

    def __init__(self, delay=0.0):
        self.machines = {}
        self.calls = []
        self.fail_on = set()
        self.delay = delay
        self._lock = threading.Lock()

    def _record(self, operation, path, *args):
        with self._lock:
            self.calls.append((operation, path) + args)
        if operation in self.fail_on:
            raise BackendFailure(operation, "simulated failure")
        if self.delay:
            time.sleep(self.delay)

    def operations(self):
        return [call[0] for call in self.calls]

    def exists(self, path):
        return path in self.machines

    def initialize(self, path, box_name):
        self._record("initialize", path, box_name)
        self.machines[path] = {"box": box_name, "state": "poweroff", "snapshots": []}

    def boot(self, path):
        self._record("boot", path)
        self.machines[path]["state"] = "running"

    def status(self, path):
        self._record("status", path)
        return [MachineStatus(name="default", state=self.machines[path]["state"])]

    def snapshot(self, path, label):
        self._record("snapshot", path, label)
        self.machines[path]["snapshots"].append(label)
        return label

    def restore_snapshot(self, path, snapshot_id):
        self._record("restore_snapshot", path, snapshot_id)
        self.machines.setdefault(path, {"box": None, "state": "poweroff", "snapshots": [snapshot_id]})

    def halt(self, path):
        self._record("halt", path)
        if path in self.machines:
            self.machines[path]["state"] = "poweroff"

    def destroy(self, path):
        self._record("destroy", path)
        self.machines.pop(path, None)

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def machine_repo() -> InMemoryMachineRepository:
    return InMemoryMachineRepository()

@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()

@pytest.fixture
def sqlite_engine(tmp_path):
    """마이그레이션이 적용된 임시 SQLite DB 엔진."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    apply_migrations(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def db_session(sqlite_engine):
    session = create_session_factory(sqlite_engine)()
    yield session
    session.close()
