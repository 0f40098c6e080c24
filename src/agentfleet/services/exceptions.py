# src/agentfleet/services/exceptions.py

class FleetError(Exception):
    """agentfleet에서 발생하는 모든 예외의 기반 클래스"""
    pass

# --- Not Found Exceptions ---
class BoxNotFoundError(FleetError):
    """요청된 라벨을 처리할 박스가 설정에 없을 때"""
    def __init__(self, label: str):
        self.label = label
        super().__init__(f"No box configured for label '{label}'.")

class MachineNotFoundError(FleetError):
    """레지스트리에서 머신을 찾을 수 없을 때"""
    def __init__(self, machine_id: str):
        self.machine_id = machine_id
        super().__init__(f"Machine with id '{machine_id}' not found.")

# --- Admission Exceptions (재시도 가능) ---
class TooManyVmsError(FleetError):
    """실행 중인 VM 수가 허용치를 넘을 때"""
    def __init__(self, allowed: int, requested: int):
        self.allowed = allowed
        self.requested = requested
        super().__init__(f"Too many vms are running (allowed: {allowed}, requested: {requested}).")

class NoFreeMemoryError(FleetError):
    """박스에 필요한 메모리보다 시스템의 여유 메모리가 적을 때"""
    def __init__(self, free: int, required: int):
        self.free = free
        self.required = required
        super().__init__(f"Not enough system memory available (free: {free} bytes, required: {required} bytes).")

# --- State Exceptions ---
class InvalidStateError(FleetError):
    """현재 머신 상태에서 허용되지 않는 작업일 때"""
    def __init__(self, machine_id: str, current: str, required: str):
        self.machine_id = machine_id
        self.current = current
        self.required = required
        super().__init__(f"Machine '{machine_id}' is in state '{current}', but '{required}' is required.")

class FleetShuttingDownError(FleetError):
    """서비스가 종료 중이라 새 작업을 받을 수 없을 때"""
    pass

# --- External Collaborator Exceptions ---
class BackendFailure(FleetError):
    """VM 백엔드(vagrant, libvirt) 호출이 실패했을 때. 원인 예외는 __cause__로 보존됩니다."""
    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Backend operation '{operation}' failed: {message}")

class OracleUnavailableError(FleetError):
    """모니터링 API에서 여유 메모리를 조회하지 못했을 때"""
    pass

class PersistenceFailure(FleetError):
    """레지스트리 쓰기에 실패했을 때. 백엔드 작업이 성공했더라도 요청은 실패로 처리됩니다."""
    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Registry operation '{operation}' failed: {message}")

# --- Configuration Exceptions ---
class ConfigurationError(FleetError):
    """설정 파일이 없거나 형식이 잘못되었을 때"""
    pass
