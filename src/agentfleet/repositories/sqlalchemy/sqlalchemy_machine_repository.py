from typing import List, Optional
from sqlalchemy.orm import Session
from agentfleet.database import models
from agentfleet.repositories.interfaces import IMachineRepository

class SqlalchemyMachineRepository(IMachineRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def list_all(self) -> List[models.Machine]:
        return self.db.query(models.Machine).order_by(models.Machine.created_at.asc()).all()

    def find_by_id(self, machine_id: str) -> Optional[models.Machine]:
        return self.db.query(models.Machine).populate_existing().filter(models.Machine.id == machine_id).first()

    def list_by_label_and_state(self, label: str, state: str) -> List[models.Machine]:
        return self.db.query(models.Machine).filter(
            models.Machine.label == label,
            models.Machine.state == state
        ).all()

    def count_by_state(self, state: str) -> int:
        return self.db.query(models.Machine).filter(models.Machine.state == state).count()

    def create(self, machine: models.Machine) -> models.Machine:
        try:
            self.db.add(machine)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(machine)
        return machine

    def update(self, machine_id: str, machine: models.Machine, expected_version: int) -> bool:
        values = {
            models.Machine.name: machine.name,
            models.Machine.label: machine.label,
            models.Machine.state: machine.state,
            models.Machine.version: machine.version,
            models.Machine.created_at: machine.created_at,
            models.Machine.modified_at: machine.modified_at,
            models.Machine.snapshot_id: machine.snapshot_id,
        }
        try:
            updated = self.db.query(models.Machine).filter(
                models.Machine.id == machine_id,
                models.Machine.version == expected_version
            ).update(values, synchronize_session=False)
            if updated == 0:
                self.db.rollback()
                return False
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
        return True

    def delete(self, machine: models.Machine) -> bool:
        if machine:
            try:
                self.db.delete(machine)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            return True
        return False
