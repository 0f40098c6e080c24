import logging
import os
import shutil
import subprocess
from typing import List

from agentfleet.backends.interfaces import IVMBackend, MachineStatus
from agentfleet.services.exceptions import BackendFailure

logger = logging.getLogger(__name__)

# --machine-readable 출력에서 데이터 안의 쉼표는 이 문자열로 치환되어 나옵니다.
VAGRANT_COMMA = "%!(VAGRANT_COMMA)"


class VagrantBackend(IVMBackend):
    """
    vagrant CLI를 호출하는 백엔드. 작업 디렉터리 하나가 Vagrantfile 하나(머신 하나)에 대응합니다.
    """

    def __init__(self, vagrant_bin: str = "vagrant", timeout: float = 900):
        self.vagrant_bin = vagrant_bin
        self.timeout = timeout

    def _run(self, operation: str, path: str, *args: str) -> str:
        command = [self.vagrant_bin, *args]
        logger.debug("Running %s in %s", " ".join(command), path)
        try:
            result = subprocess.run(
                command, cwd=path, check=True, capture_output=True, text=True, timeout=self.timeout
            )
        except subprocess.CalledProcessError as e:
            raise BackendFailure(operation, f"'{' '.join(command)}' exited with {e.returncode}: {(e.stderr or '').strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise BackendFailure(operation, f"'{' '.join(command)}' timed out after {self.timeout} seconds") from e
        except FileNotFoundError as e:
            # vagrant 실행 파일 또는 작업 디렉터리가 없는 경우
            raise BackendFailure(operation, f"Cannot run '{self.vagrant_bin}' in {path}: {e}") from e
        return result.stdout

    def exists(self, path: str) -> bool:
        return os.path.isfile(os.path.join(path, "Vagrantfile"))

    def initialize(self, path: str, box_name: str):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise BackendFailure("initialize", f"Cannot create working directory {path}: {e}") from e

        if self.exists(path):
            logger.info("Vagrantfile already present at %s, skipping init", path)
            return
        logger.info("Initializing vagrant environment at %s with box %s", path, box_name)
        self._run("initialize", path, "init", "--force", box_name)

    def boot(self, path: str):
        logger.info("Waiting for vagrant up at %s to complete, this may take a while", path)
        self._run("boot", path, "up")

    def status(self, path: str) -> List[MachineStatus]:
        output = self._run("status", path, "status", "--machine-readable")
        return parse_machine_readable_status(output)

    def snapshot(self, path: str, label: str) -> str:
        self._run("snapshot", path, "snapshot", "save", label)
        return label

    def restore_snapshot(self, path: str, snapshot_id: str):
        self._run("restore_snapshot", path, "snapshot", "restore", "--no-provision", snapshot_id)

    def halt(self, path: str):
        self._run("halt", path, "halt")

    def destroy(self, path: str):
        # Vagrantfile이 없으면 vagrant가 관리하는 머신도 없으므로 디렉터리만 정리합니다.
        if self.exists(path):
            self._run("destroy", path, "destroy", "--force")
        else:
            logger.info("No Vagrantfile at %s, removing the working directory only", path)
        self._remove_working_dir(path)

    def _remove_working_dir(self, path: str):
        if not os.path.isdir(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning("Machine at %s destroyed, but its working directory could not be removed: %s", path, e)


def parse_machine_readable_status(output: str) -> List[MachineStatus]:
    """
    `vagrant status --machine-readable` 출력에서 머신별 상태를 추출합니다.

    각 줄은 "timestamp,target,type,data..." 형식이며, type이 "state"인 줄만 사용합니다.

    Raises:
        BackendFailure: 형식이 맞지 않는 줄이 있거나 상태 줄이 하나도 없을 때.
    """
    statuses = []
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = line.split(",")
        if len(fields) < 3 or not fields[0].strip().isdigit():
            raise BackendFailure("status", f"Malformed vagrant output line: {line!r}")
        if fields[2] != "state":
            continue
        if len(fields) < 4 or not fields[1]:
            raise BackendFailure("status", f"Malformed vagrant state line: {line!r}")
        state = ",".join(fields[3:]).replace(VAGRANT_COMMA, ",")
        statuses.append(MachineStatus(name=fields[1], state=state))

    if not statuses:
        raise BackendFailure("status", "vagrant reported no machine state")
    return statuses
