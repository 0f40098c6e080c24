from abc import ABC, abstractmethod
from typing import List, Optional
from agentfleet.database import models

class IMachineRepository(ABC):
    @abstractmethod
    def list_all(self) -> List[models.Machine]:
        """레지스트리에 있는 모든 머신의 목록을 조회합니다."""
        pass

    @abstractmethod
    def find_by_id(self, machine_id: str) -> Optional[models.Machine]:
        """고유 ID로 특정 머신을 조회합니다."""
        pass

    @abstractmethod
    def list_by_label_and_state(self, label: str, state: str) -> List[models.Machine]:
        """라벨과 상태가 모두 일치하는 머신의 목록을 조회합니다. 순서는 보장하지 않습니다."""
        pass

    @abstractmethod
    def count_by_state(self, state: str) -> int:
        """특정 상태에 있는 머신의 개수를 조회합니다."""
        pass

    @abstractmethod
    def create(self, machine: models.Machine) -> models.Machine:
        """새로운 머신 기록을 하나의 트랜잭션으로 저장합니다."""
        pass

    @abstractmethod
    def update(self, machine_id: str, machine: models.Machine, expected_version: int) -> bool:
        """
        머신 기록 전체를 하나의 트랜잭션으로 교체합니다.

        Args:
            machine_id: 교체할 머신의 ID.
            machine: 새 값을 담은 머신 객체.
            expected_version: 저장소에 있어야 하는 현재 version 값.

        Returns:
            교체되었으면 True, 기록이 없거나 version이 달라 아무것도 바뀌지 않았으면 False.
        """
        pass

    @abstractmethod
    def delete(self, machine: models.Machine) -> bool:
        """특정 머신 기록을 레지스트리에서 삭제합니다."""
        pass
