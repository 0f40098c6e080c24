from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class MachineStatus:
    """백엔드가 보고하는 머신 하나의 이름과 상태 (예: 'default', 'running')."""
    name: str
    state: str


class IVMBackend(ABC):
    """
    가상화 도구를 감싸는 어댑터. 모든 머신은 작업 디렉터리 경로(path)로 식별됩니다.

    모든 메서드는 실패 시 BackendFailure를 발생시켜야 하며, 호출은 수 초에서 수 분이 걸릴 수 있습니다.
    """

    @abstractmethod
    def exists(self, path: str) -> bool:
        """path에 머신 정의가 이미 만들어져 있는지 확인합니다."""
        pass

    @abstractmethod
    def initialize(self, path: str, box_name: str):
        """path에 box_name 박스로 머신 정의를 만듭니다."""
        pass

    @abstractmethod
    def boot(self, path: str):
        """머신을 부팅합니다."""
        pass

    @abstractmethod
    def status(self, path: str) -> List[MachineStatus]:
        """path에 정의된 머신들의 현재 상태를 조회합니다."""
        pass

    @abstractmethod
    def snapshot(self, path: str, label: str) -> str:
        """이름이 label인 스냅샷을 만들고 스냅샷 ID를 반환합니다."""
        pass

    @abstractmethod
    def restore_snapshot(self, path: str, snapshot_id: str):
        """머신을 스냅샷 시점으로 되돌립니다."""
        pass

    @abstractmethod
    def halt(self, path: str):
        """머신의 전원을 끕니다. 디스크와 스냅샷은 유지됩니다."""
        pass

    @abstractmethod
    def destroy(self, path: str):
        """머신과 관련 리소스를 완전히 제거합니다."""
        pass
