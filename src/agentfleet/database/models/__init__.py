from .machine import Machine, MachineState
