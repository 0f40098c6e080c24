from .machine import IMachineRepository
