import hashlib
import logging
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from agentfleet.backends.interfaces import IVMBackend
from agentfleet.database import models
from agentfleet.database.models import MachineState
from agentfleet.repositories.interfaces import IMachineRepository
from agentfleet.services.admission import AdmissionController, Reservation
from agentfleet.services.box_catalog import Box, BoxCatalog
from agentfleet.services.exceptions import (
    BackendFailure,
    InvalidStateError,
    MachineNotFoundError,
    PersistenceFailure,
)

logger = logging.getLogger(__name__)


def generate_machine_id(label: str, timestamp_ns: Optional[int] = None) -> str:
    """라벨과 나노초 타임스탬프를 해시하여 조율 없이도 충돌하지 않는 머신 ID를 만듭니다."""
    if timestamp_ns is None:
        timestamp_ns = time.time_ns()
    return hashlib.sha256(f"{label}{timestamp_ns}".encode('utf-8')).hexdigest()


class FleetService:
    """
    빌드 에이전트 VM의 수명 주기를 관리합니다.

    시작 요청은 승인 제어(실행 중인 VM 수, 여유 메모리)를 통과해야 하며, 같은 라벨의
    Unused 머신이 있으면 스냅샷으로 되돌려 재사용하고, 없으면 새 머신을 만들고
    기준 스냅샷을 찍습니다. 레지스트리에는 백엔드 작업이 끝난 뒤에만 기록합니다.
    """

    def __init__(self, machine_repo: IMachineRepository, backend: IVMBackend, box_catalog: BoxCatalog,
                 admission: AdmissionController, working_dir_path: str):
        """
        FleetService를 초기화합니다.

        Args:
            machine_repo: 머신 기록에 접근하기 위한 리포지토리 (요청마다 생성).
            backend: vagrant 또는 libvirt 백엔드.
            box_catalog: 라벨 -> 박스 매핑.
            admission: 모든 요청이 공유하는 승인 제어기.
            working_dir_path: 머신별 작업 디렉터리가 만들어질 상위 경로.
        """
        self.machine_repo = machine_repo
        self.backend = backend
        self.box_catalog = box_catalog
        self.admission = admission
        self.working_dir_path = working_dir_path

    # --------------------------------------------------------------------------
    ## 에이전트 시작 / 중지
    # --------------------------------------------------------------------------

    def start_agent(self, label: str) -> str:
        """
        라벨에 맞는 에이전트 머신을 Running 상태로 만들고 머신 ID를 반환합니다.

        Args:
            label: 요청된 작업 라벨 (예: 'windows').

        Returns:
            Running 상태가 된 머신의 ID.

        Raises:
            BoxNotFoundError: 라벨을 처리할 박스가 없을 때. 백엔드나 레지스트리는 호출하지 않습니다.
            TooManyVmsError: 실행 중인 VM 수가 최대치일 때.
            NoFreeMemoryError: 여유 메모리가 부족할 때.
            OracleUnavailableError: 여유 메모리를 조회하지 못했을 때.
            FleetShuttingDownError: 서비스가 종료 중일 때.
            BackendFailure: VM 백엔드 작업이 실패했을 때. 레지스트리는 바뀌지 않습니다.
            PersistenceFailure: 레지스트리 기록에 실패했을 때.
        """
        box = self.box_catalog.find_box(label)
        reservation = self.admission.admit(box, self._count_running)
        try:
            idle_machine = self._claim_idle_machine(label)
            if idle_machine is None:
                return self._create_machine(label, box, reservation)
            try:
                return self._reuse_machine(idle_machine, reservation)
            finally:
                self.admission.release_claim(idle_machine.id)
        finally:
            # 커밋된 예약이면 아무 일도 하지 않습니다.
            self.admission.release(reservation)

    def stop_agent(self, machine_id: str) -> models.Machine:
        """
        Running 상태의 머신을 멈춥니다.

        기준 스냅샷이 있으면 전원만 끄고 Unused로 바꿔 재사용할 수 있게 하고,
        없으면 머신을 파기하고 Destroyed로 바꿉니다. 백엔드 작업이 실패하면 기록은
        Running으로 남아 있으므로 다시 시도할 수 있습니다.

        Returns:
            새 상태가 반영된 머신 기록.

        Raises:
            MachineNotFoundError: 해당 ID의 머신이 없을 때.
            InvalidStateError: 머신이 Running 상태가 아니거나 다른 요청이 작업 중일 때.
            BackendFailure: VM 백엔드 작업이 실패했을 때.
            PersistenceFailure: 레지스트리 기록에 실패했을 때.
        """
        if not self.admission.claim(machine_id):
            machine = self._get(machine_id)
            raise InvalidStateError(machine_id, f"{machine.state} (busy)", MachineState.RUNNING.value)
        try:
            machine = self._get(machine_id)
            if machine.state != MachineState.RUNNING.value:
                raise InvalidStateError(machine_id, machine.state, MachineState.RUNNING.value)

            path = self._machine_path(machine_id)
            if machine.snapshot_id:
                logger.info("Halting machine %s, it stays reusable from snapshot %s", machine_id, machine.snapshot_id)
                self.backend.halt(path)
                new_state = MachineState.UNUSED
            else:
                logger.info("Machine %s has no snapshot, destroying it", machine_id)
                self.backend.destroy(path)
                new_state = MachineState.DESTROYED

            updated = self._next_revision(machine, new_state)
            self._update(machine_id, updated, machine.version)
            logger.info("Machine %s is now %s", machine_id, new_state.value)
            return updated
        finally:
            self.admission.release_claim(machine_id)

    # --------------------------------------------------------------------------
    ## 조회 / 삭제 / 정합성 검사
    # --------------------------------------------------------------------------

    def list_machines(self) -> List[Dict[str, Any]]:
        """레지스트리의 모든 머신 기록을 반환합니다."""
        machines = self._registry("list", self.machine_repo.list_all)
        return [m.to_dict() for m in machines]

    def get_machine(self, machine_id: str) -> Dict[str, Any]:
        return self._get(machine_id).to_dict()

    def delete_machine(self, machine_id: str) -> bool:
        """
        머신 기록을 레지스트리에서 명시적으로 삭제합니다.

        Unused 머신은 백엔드에서 먼저 파기하고, Destroyed 머신은 기록만 지웁니다.

        Raises:
            MachineNotFoundError: 해당 ID의 머신이 없을 때.
            InvalidStateError: 머신이 Running 상태이거나 다른 요청이 작업 중일 때.
            BackendFailure: Unused 머신 파기에 실패했을 때. 기록은 남아 있습니다.
        """
        if not self.admission.claim(machine_id):
            machine = self._get(machine_id)
            raise InvalidStateError(machine_id, f"{machine.state} (busy)", MachineState.DESTROYED.value)
        try:
            machine = self._get(machine_id)
            if machine.state == MachineState.RUNNING.value:
                raise InvalidStateError(machine_id, machine.state, MachineState.DESTROYED.value)

            if machine.state == MachineState.UNUSED.value:
                self.backend.destroy(self._machine_path(machine_id))

            self._registry("delete", self.machine_repo.delete, machine)
            logger.info("Record for machine %s deleted", machine_id)
            return True
        finally:
            self.admission.release_claim(machine_id)

    def reconcile(self) -> List[Dict[str, Any]]:
        """
        레지스트리와 백엔드를 비교하여 불일치하는 머신을 찾아냅니다.

        Destroyed가 아닌데 백엔드에 머신 정의가 없는 기록의 목록을 반환합니다. 기록은 바꾸지 않습니다.
        """
        orphaned = []
        for machine in self._registry("list", self.machine_repo.list_all):
            if machine.state == MachineState.DESTROYED.value:
                continue
            if not self.backend.exists(self._machine_path(machine.id)):
                orphaned.append(machine.to_dict())
        if orphaned:
            logger.warning("Found %d registry records without a backend machine", len(orphaned))
        return orphaned

    def shutdown(self):
        """새 시작 요청을 더 받지 않습니다. 이미 진행 중인 백엔드 작업은 끝까지 실행됩니다."""
        self.admission.close()

    # --------------------------------------------------------------------------
    ## 내부 구현
    # --------------------------------------------------------------------------

    def _claim_idle_machine(self, label: str) -> Optional[models.Machine]:
        candidates = self._registry(
            "find_idle", self.machine_repo.list_by_label_and_state, label, MachineState.UNUSED.value
        )
        for candidate in candidates:
            if not candidate.snapshot_id or not self.admission.claim(candidate.id):
                continue
            # 목록 조회와 점유 사이에 다른 요청이 기록을 바꿨을 수 있으므로 다시 읽습니다.
            # 같은 세션에서는 다시 읽은 값이 candidate 객체를 덮어쓰므로 version을 먼저 보관합니다.
            listed_version = candidate.version
            try:
                machine = self._registry("get", self.machine_repo.find_by_id, candidate.id)
            except PersistenceFailure:
                self.admission.release_claim(candidate.id)
                raise
            if (machine is not None and machine.state == MachineState.UNUSED.value
                    and machine.version == listed_version and machine.snapshot_id):
                return machine
            logger.info("Machine %s changed since it was listed, skipping it", candidate.id)
            self.admission.release_claim(candidate.id)
        return None

    def _reuse_machine(self, machine: models.Machine, reservation: Reservation) -> str:
        machine_id = machine.id
        expected_version = machine.version
        path = self._machine_path(machine_id)

        logger.info("Reusing machine %s for label '%s' from snapshot %s", machine_id, machine.label, machine.snapshot_id)
        try:
            self.backend.restore_snapshot(path, machine.snapshot_id)
            self.backend.boot(path)
        except BackendFailure as e:
            # 기록은 Unused로 남으므로 반쯤 살아난 머신도 꺼 둡니다.
            logger.error("Reusing machine %s failed: %s", machine_id, e)
            self._halt_quietly(path)
            raise

        updated = self._next_revision(machine, MachineState.RUNNING)
        try:
            self.admission.commit(reservation, lambda: self._update(machine_id, updated, expected_version))
        except PersistenceFailure:
            # 기록은 Unused로 남아 있으므로 머신도 다시 꺼 둡니다.
            self._halt_quietly(path)
            raise
        logger.info("Machine %s is running again", machine_id)
        return machine_id

    def _create_machine(self, label: str, box: Box, reservation: Reservation) -> str:
        machine_id = generate_machine_id(label)
        path = self._machine_path(machine_id)
        now = datetime.now()
        machine = models.Machine(
            id=machine_id,
            name=f"{label}-{machine_id[:8]}",
            label=label,
            state=MachineState.CREATING.value,
            version=1,
            created_at=now,
            modified_at=now,
        )

        logger.info("Creating machine %s for label '%s' with box '%s' at %s", machine_id, label, box.name, path)
        try:
            self.backend.initialize(path, box.name)
            self.backend.boot(path)
            machine.snapshot_id = self.backend.snapshot(path, f"baseline-{machine_id[:12]}")
        except BackendFailure as e:
            logger.error("Machine %s creation failed: %s. Starting rollback...", machine_id, e)
            self._rollback_machine_creation(path)
            raise

        machine.state = MachineState.RUNNING.value
        machine.modified_at = datetime.now()
        try:
            self.admission.commit(reservation, lambda: self._registry("insert", self.machine_repo.create, machine))
        except PersistenceFailure:
            self._rollback_machine_creation(path)
            raise
        logger.info("Machine %s is running with baseline snapshot %s", machine_id, machine.snapshot_id)
        return machine_id

    def _rollback_machine_creation(self, path: str):
        try:
            self.backend.destroy(path)
        except BackendFailure as e:
            logger.warning("Rollback Warning: Failed to clean up machine at %s: %s", path, e)

    def _halt_quietly(self, path: str):
        try:
            self.backend.halt(path)
        except BackendFailure as e:
            logger.warning("Failed to halt machine at %s: %s", path, e)

    def _count_running(self) -> int:
        return self._registry("count_running", self.machine_repo.count_by_state, MachineState.RUNNING.value)

    def _get(self, machine_id: str) -> models.Machine:
        machine = self._registry("get", self.machine_repo.find_by_id, machine_id)
        if machine is None:
            raise MachineNotFoundError(machine_id)
        return machine

    def _update(self, machine_id: str, machine: models.Machine, expected_version: int):
        if not self._registry("update", self.machine_repo.update, machine_id, machine, expected_version):
            raise PersistenceFailure("update", f"Machine '{machine_id}' was modified concurrently (expected version {expected_version}).")

    def _registry(self, operation: str, call, *args):
        try:
            return call(*args)
        except SQLAlchemyError as e:
            logger.error("Registry operation '%s' failed: %s", operation, e)
            raise PersistenceFailure(operation, str(e)) from e

    def _next_revision(self, machine: models.Machine, state: MachineState) -> models.Machine:
        return models.Machine(
            id=machine.id,
            name=machine.name,
            label=machine.label,
            state=state.value,
            version=machine.version + 1,
            created_at=machine.created_at,
            modified_at=datetime.now(),
            snapshot_id=machine.snapshot_id,
        )

    def _machine_path(self, machine_id: str) -> str:
        return os.path.join(self.working_dir_path, machine_id)
