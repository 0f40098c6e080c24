from .interfaces import IVMBackend, MachineStatus
from .vagrant_backend import VagrantBackend


def create_backend(config, box_catalog) -> IVMBackend:
    """설정의 backend 값에 맞는 백엔드를 생성합니다. libvirt는 필요할 때만 임포트합니다."""
    if config.backend == "libvirt":
        from .libvirt_backend import LibvirtBackend
        return LibvirtBackend(
            box_catalog,
            uri=config.libvirt_uri,
            image_dir=config.image_dir,
            timeout=config.command_timeout_seconds,
        )
    return VagrantBackend(timeout=config.command_timeout_seconds)
