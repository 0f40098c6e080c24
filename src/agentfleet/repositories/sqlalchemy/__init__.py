from .sqlalchemy_machine_repository import SqlalchemyMachineRepository
