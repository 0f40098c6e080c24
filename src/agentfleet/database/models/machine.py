import enum

from sqlalchemy import Column, DateTime, Integer, String
from ..database import Base


class MachineState(str, enum.Enum):
    CREATING = "Creating"
    RUNNING = "Running"
    UNUSED = "Unused"
    DESTROYED = "Destroyed"


class Machine(Base):
    """
    프로비저닝된 빌드 에이전트 VM 하나의 기록입니다.

    id는 라벨과 나노초 타임스탬프의 해시로 한 번 정해지면 바뀌지 않습니다.
    version은 레코드가 바뀔 때마다 1씩 증가하며 낙관적 동시성 검사에 사용됩니다.
    snapshot_id는 기준(baseline) 스냅샷을 찍은 뒤에만 채워집니다.
    """
    __tablename__ = "machines"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    label = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column("createdAt", DateTime, nullable=False)
    modified_at = Column("modifiedAt", DateTime)
    snapshot_id = Column("snapshotid", String, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "label": self.label,
            "state": self.state,
            "version": self.version,
            "snapshot_id": self.snapshot_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
        }
