import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Set, TypeVar

from agentfleet.services.box_catalog import Box
from agentfleet.services.exceptions import FleetShuttingDownError, NoFreeMemoryError, TooManyVmsError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Reservation:
    """승인된 시작 요청 하나가 차지하고 있는 VM 슬롯과 메모리."""
    id: int
    box_name: str
    memory_bytes: int


class AdmissionController:
    """
    실행 중인 VM 수와 여유 메모리를 기준으로 새 VM 시작을 승인합니다.

    확인과 예약은 하나의 락 안에서 이루어지므로, 동시에 들어온 요청들이 같은
    빈 슬롯이나 같은 여유 메모리를 두고 함께 통과할 수 없습니다. 예약은 레지스트리
    기록이 커밋될 때(commit) 또는 요청이 실패할 때(release)까지 유지됩니다.
    """

    def __init__(self, max_vm_count: int, capacity_oracle):
        """
        Args:
            max_vm_count: 동시에 Running 상태일 수 있는 최대 VM 수.
            capacity_oracle: get_free_memory()로 여유 메모리(바이트)를 알려주는 객체.
        """
        self.max_vm_count = max_vm_count
        self.capacity_oracle = capacity_oracle
        self._lock = threading.Lock()
        self._reservations: Dict[int, Reservation] = {}
        self._claimed: Set[str] = set()
        self._ids = itertools.count(1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """이후의 admit() 호출을 모두 거절합니다. 이미 발급된 예약은 그대로 유지됩니다."""
        with self._lock:
            self._closed = True
        logger.info("Admission closed, no new machines will be started")

    @property
    def reserved_count(self) -> int:
        with self._lock:
            return len(self._reservations)

    def admit(self, box: Box, count_running: Callable[[], int]) -> Reservation:
        """
        박스 하나를 더 띄울 수 있는지 확인하고, 가능하면 슬롯과 메모리를 예약합니다.

        Args:
            box: 시작하려는 박스.
            count_running: 레지스트리에서 Running 상태 머신 수를 새로 읽어오는 함수.

        Returns:
            commit() 또는 release()로 반드시 해제해야 하는 예약.

        Raises:
            TooManyVmsError: 실행 중 + 예약된 VM 수가 최대치에 도달했을 때.
            NoFreeMemoryError: 박스 메모리가 (여유 메모리 - 예약된 메모리) 이상일 때.
            OracleUnavailableError: 여유 메모리 조회에 실패했을 때.
            FleetShuttingDownError: close()가 호출된 뒤일 때.
        """
        with self._lock:
            if self._closed:
                raise FleetShuttingDownError("The fleet is shutting down and does not accept new agents.")
            running = count_running()
            pending = len(self._reservations)
            if running + pending + 1 > self.max_vm_count:
                logger.warning(
                    "Rejecting box '%s': %d running and %d pending of %d allowed",
                    box.name, running, pending, self.max_vm_count,
                )
                raise TooManyVmsError(allowed=self.max_vm_count, requested=1)

            free_memory = self.capacity_oracle.get_free_memory()
            # 부팅 중인 VM의 메모리가 이미 여유 메모리 값에 반영되었을 수도 있어 이 계산은 보수적입니다.
            reserved_memory = sum(r.memory_bytes for r in self._reservations.values())
            available = free_memory - reserved_memory
            # 여유 메모리와 정확히 같은 크기도 거절합니다.
            if box.memory_bytes >= available:
                logger.warning(
                    "Rejecting box '%s': requires %d bytes, %d bytes available",
                    box.name, box.memory_bytes, available,
                )
                raise NoFreeMemoryError(free=available, required=box.memory_bytes)

            reservation = Reservation(id=next(self._ids), box_name=box.name, memory_bytes=box.memory_bytes)
            self._reservations[reservation.id] = reservation
            return reservation

    def commit(self, reservation: Reservation, write: Callable[[], T]) -> T:
        """
        예약을 들고 있는 상태에서 write()로 레지스트리 기록을 남기고 예약을 해제합니다.

        write()가 실패해도 예약은 해제되고 예외는 그대로 전파됩니다.
        """
        with self._lock:
            try:
                return write()
            finally:
                self._reservations.pop(reservation.id, None)

    def release(self, reservation: Reservation):
        with self._lock:
            self._reservations.pop(reservation.id, None)

    def claim(self, machine_id: str) -> bool:
        """다른 요청이 작업 중이지 않은 머신이면 점유하고 True를 반환합니다."""
        with self._lock:
            if machine_id in self._claimed:
                return False
            self._claimed.add(machine_id)
            return True

    def release_claim(self, machine_id: str):
        with self._lock:
            self._claimed.discard(machine_id)
