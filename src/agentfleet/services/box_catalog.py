from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List

from agentfleet.config import BoxConfig
from agentfleet.services.exceptions import BoxNotFoundError, ConfigurationError


@dataclass(frozen=True)
class Box:
    """라벨로 선택되는 VM 이미지(박스) 정의와 필요한 메모리 양입니다."""
    name: str
    labels: FrozenSet[str]
    memory_bytes: int


class BoxCatalog:
    """라벨 -> 박스 매핑. 설정을 읽은 뒤에는 바뀌지 않습니다."""

    def __init__(self, boxes: Iterable[Box]):
        self._boxes: List[Box] = list(boxes)
        self._by_label: Dict[str, Box] = {}
        for box in self._boxes:
            for label in box.labels:
                owner = self._by_label.get(label)
                if owner is not None and owner.name != box.name:
                    raise ConfigurationError(
                        f"Label '{label}' is served by both '{owner.name}' and '{box.name}'."
                    )
                self._by_label[label] = box

    @classmethod
    def from_config(cls, box_configs: Iterable[BoxConfig]) -> "BoxCatalog":
        return cls(
            Box(name=b.name, labels=frozenset(b.labels), memory_bytes=b.memory_bytes)
            for b in box_configs
        )

    def find_box(self, label: str) -> Box:
        """
        라벨을 처리할 박스를 반환합니다.

        Raises:
            BoxNotFoundError: 라벨을 처리하는 박스가 없을 때.
        """
        box = self._by_label.get(label)
        if box is None:
            raise BoxNotFoundError(label)
        return box

    def find_by_name(self, name: str) -> Box:
        for box in self._boxes:
            if box.name == name:
                return box
        raise BoxNotFoundError(name)

    def labels(self) -> List[str]:
        return sorted(self._by_label)

    def __iter__(self):
        return iter(self._boxes)
