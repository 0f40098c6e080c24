import libvirt
import logging
import os
import shutil
import subprocess
import uuid
from typing import List
from xml.sax.saxutils import escape

from agentfleet.backends.interfaces import IVMBackend, MachineStatus
from agentfleet.services.box_catalog import BoxCatalog
from agentfleet.services.exceptions import BackendFailure, BoxNotFoundError
from agentfleet.utils.vm_xml_generator import generate_vm_xml

logger = logging.getLogger(__name__)

DISK_FILENAME = "disk.qcow2"


class LibvirtBackend(IVMBackend):
    """
    libvirt(KVM)로 머신을 관리하는 백엔드.

    박스 이름은 image_dir 아래의 "<box_name>.qcow2" 기반 이미지에 대응하고,
    머신마다 작업 디렉터리 안에 CoW 디스크를 만듭니다. 도메인 이름은 작업 디렉터리의 마지막 경로입니다.
    """

    def __init__(self, box_catalog: BoxCatalog, uri="qemu:///system", image_dir="/var/lib/libvirt/images",
                 cpu_count: int = 2, timeout: float = 900):
        self.box_catalog = box_catalog
        self.image_dir = image_dir
        self.cpu_count = cpu_count
        self.timeout = timeout
        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise BackendFailure("connect", f"Failed to open connection to the hypervisor at {uri}: {e}") from e

    @staticmethod
    def _domain_name(path: str) -> str:
        return os.path.basename(os.path.normpath(path))

    def _lookup(self, operation: str, path: str):
        try:
            return self.conn.lookupByName(self._domain_name(path))
        except libvirt.libvirtError as e:
            raise BackendFailure(operation, f"Domain for {path} not found: {e}") from e

    def exists(self, path: str) -> bool:
        try:
            self.conn.lookupByName(self._domain_name(path))
            return True
        except libvirt.libvirtError:
            return False

    def _create_disk(self, source_filepath: str, target_filepath: str):
        """원본 이미지를 backing file로 하는 qcow2 CoW 디스크를 생성합니다."""
        command = [
            'qemu-img', 'create',
            '-f', 'qcow2',
            '-F', 'qcow2',
            '-b', source_filepath,
            target_filepath
        ]
        try:
            subprocess.run(command, check=True, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            raise BackendFailure("initialize", f"Failed to create CoW disk {target_filepath}: {e.stderr}") from e
        except subprocess.TimeoutExpired as e:
            raise BackendFailure("initialize", f"qemu-img timed out after {self.timeout} seconds") from e
        except FileNotFoundError as e:
            raise BackendFailure("initialize", "qemu-img command not found. Install qemu-utils.") from e

    def initialize(self, path: str, box_name: str):
        try:
            box = self.box_catalog.find_by_name(box_name)
        except BoxNotFoundError as e:
            raise BackendFailure("initialize", str(e)) from e

        source_filepath = os.path.join(self.image_dir, f"{box_name}.qcow2")
        if not os.path.exists(source_filepath):
            raise BackendFailure("initialize", f"Source image file not found on disk: {source_filepath}")

        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise BackendFailure("initialize", f"Cannot create working directory {path}: {e}") from e

        disk_filepath = os.path.join(path, DISK_FILENAME)
        self._create_disk(source_filepath, disk_filepath)

        xml_config = generate_vm_xml(
            self._domain_name(path), str(uuid.uuid4()), box_name, self.cpu_count, box.memory_bytes, disk_filepath
        )
        try:
            self.conn.defineXML(xml_config)
        except libvirt.libvirtError as e:
            raise BackendFailure("initialize", f"Failed to define the domain for {path}: {e}") from e

    def boot(self, path: str):
        domain = self._lookup("boot", path)
        try:
            if domain.isActive():
                return
            if domain.create() < 0:
                raise BackendFailure("boot", f"Failed to start the domain for {path}.")
        except libvirt.libvirtError as e:
            raise BackendFailure("boot", str(e)) from e

    def status(self, path: str) -> List[MachineStatus]:
        domain = self._lookup("status", path)
        try:
            return [MachineStatus(name=domain.name(), state=self._map_vm_state(domain.info()[0]))]
        except libvirt.libvirtError as e:
            raise BackendFailure("status", str(e)) from e

    def snapshot(self, path: str, label: str) -> str:
        domain = self._lookup("snapshot", path)
        snapshot_xml = f"<domainsnapshot><name>{escape(label)}</name></domainsnapshot>"
        try:
            return domain.snapshotCreateXML(snapshot_xml, 0).getName()
        except libvirt.libvirtError as e:
            raise BackendFailure("snapshot", str(e)) from e

    def restore_snapshot(self, path: str, snapshot_id: str):
        domain = self._lookup("restore_snapshot", path)
        try:
            snapshot = domain.snapshotLookupByName(snapshot_id, 0)
            domain.revertToSnapshot(snapshot, 0)
        except libvirt.libvirtError as e:
            raise BackendFailure("restore_snapshot", str(e)) from e

    def halt(self, path: str):
        domain = self._lookup("halt", path)
        try:
            if domain.isActive():
                domain.destroy()
        except libvirt.libvirtError as e:
            raise BackendFailure("halt", str(e)) from e

    def destroy(self, path: str):
        # 도메인 정리가 실패해도 디스크는 항상 지웁니다.
        try:
            domain = self._lookup("destroy", path)
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA)
            except libvirt.libvirtError as e:
                raise BackendFailure("destroy", str(e)) from e
        finally:
            self._remove_disk(path)

    def _remove_disk(self, path: str):
        if not os.path.isdir(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning("Failed to remove the disk directory %s: %s", path, e)

    def _map_vm_state(self, state_code):
        state_map = {
            libvirt.VIR_DOMAIN_NOSTATE: 'NOSTATE',
            libvirt.VIR_DOMAIN_RUNNING: 'RUNNING',
            libvirt.VIR_DOMAIN_BLOCKED: 'BLOCKED',
            libvirt.VIR_DOMAIN_PAUSED: 'PAUSED',
            libvirt.VIR_DOMAIN_SHUTDOWN: 'SHUTDOWN',
            libvirt.VIR_DOMAIN_SHUTOFF: 'SHUTOFF',
            libvirt.VIR_DOMAIN_CRASHED: 'CRASHED',
            libvirt.VIR_DOMAIN_PMSUSPENDED: 'PMSUSPENDED',
        }
        return state_map.get(state_code, 'UNKNOWN')

    def close(self):
        if self.conn:
            try:
                self.conn.close()
            except libvirt.libvirtError as e:
                logger.debug("Ignoring error while closing libvirt connection: %s", e)
            self.conn = None
