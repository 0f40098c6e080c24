# tests/backends/test_libvirt_backend.py
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import libvirt

from agentfleet.backends.interfaces import MachineStatus
from agentfleet.backends.libvirt_backend import LibvirtBackend
from agentfleet.services.box_catalog import Box, BoxCatalog
from agentfleet.services.exceptions import BackendFailure

MiB = 1024 * 1024

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_conn():
    """libvirt 연결(virConnect)에 대한 모의 객체."""
    return MagicMock()

@pytest.fixture
def mock_domain(mock_conn):
    domain = MagicMock()
    domain.isActive.return_value = 0
    domain.create.return_value = 0
    mock_conn.lookupByName.return_value = domain
    return domain

@pytest.fixture
def image_dir(tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    (images / "win7-slave.qcow2").write_bytes(b"")
    return images

@pytest.fixture
def backend(mock_conn, image_dir) -> LibvirtBackend:
    catalog = BoxCatalog([Box(name="win7-slave", labels=frozenset({"windows"}), memory_bytes=2048 * MiB)])
    with patch("agentfleet.backends.libvirt_backend.libvirt.open", return_value=mock_conn):
        return LibvirtBackend(catalog, uri="qemu:///system", image_dir=str(image_dir), cpu_count=2, timeout=30)


def test_connection_failure_is_a_backend_failure():
    with patch("agentfleet.backends.libvirt_backend.libvirt.open", side_effect=libvirt.libvirtError("no hypervisor")):
        with pytest.raises(BackendFailure) as exc_info:
            LibvirtBackend(BoxCatalog([]))
    assert exc_info.value.operation == "connect"

# ===================================================================
#  initialize 테스트 스위트
# ===================================================================
class TestInitialize:
    @patch("agentfleet.backends.libvirt_backend.subprocess.run")
    def test_creates_cow_disk_and_defines_domain(self, mock_run, backend, mock_conn, image_dir, tmp_path):
        """원본 이미지를 backing file로 하는 디스크를 만들고 도메인을 정의합니다."""
        # === Arrange ===
        path = tmp_path / "machines" / "abc123"

        # === Act ===
        backend.initialize(str(path), "win7-slave")

        # === Assert ===
        assert path.is_dir()
        mock_run.assert_called_once_with(
            ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2",
             "-b", str(image_dir / "win7-slave.qcow2"), str(path / "disk.qcow2")],
            check=True, capture_output=True, text=True, timeout=30,
        )
        xml_config = mock_conn.defineXML.call_args.args[0]
        assert "<name>abc123</name>" in xml_config
        assert "<memory unit='KiB'>2097152</memory>" in xml_config
        assert f"<source file='{path / 'disk.qcow2'}'/>" in xml_config

    @patch("agentfleet.backends.libvirt_backend.subprocess.run")
    def test_unknown_box(self, mock_run, backend, tmp_path):
        with pytest.raises(BackendFailure):
            backend.initialize(str(tmp_path / "abc"), "ubuntu-slave")
        mock_run.assert_not_called()

    @patch("agentfleet.backends.libvirt_backend.subprocess.run")
    def test_missing_source_image(self, mock_run, backend, image_dir, tmp_path):
        (image_dir / "win7-slave.qcow2").unlink()

        with pytest.raises(BackendFailure, match="Source image"):
            backend.initialize(str(tmp_path / "abc"), "win7-slave")
        mock_run.assert_not_called()

    @patch("agentfleet.backends.libvirt_backend.subprocess.run")
    def test_qemu_img_failure(self, mock_run, backend, mock_conn, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["qemu-img"], stderr="Permission denied")

        with pytest.raises(BackendFailure, match="Permission denied"):
            backend.initialize(str(tmp_path / "abc"), "win7-slave")
        mock_conn.defineXML.assert_not_called()

    @patch("agentfleet.backends.libvirt_backend.subprocess.run")
    def test_define_failure(self, mock_run, backend, mock_conn, tmp_path):
        mock_conn.defineXML.side_effect = libvirt.libvirtError("invalid XML")

        with pytest.raises(BackendFailure) as exc_info:
            backend.initialize(str(tmp_path / "abc"), "win7-slave")
        assert exc_info.value.operation == "initialize"

    @patch("agentfleet.backends.libvirt_backend.subprocess.run")
    def test_destroy_after_define_failure_removes_disk(self, mock_run, backend, mock_conn, tmp_path):
        """도메인 정의에 실패한 뒤 정리할 때, 도메인이 없어도 만들어 둔 디스크 디렉터리는 지워야 합니다."""
        # === Arrange ===
        path = tmp_path / "abc"
        mock_run.side_effect = lambda command, **kwargs: open(command[-1], "wb").close()
        mock_conn.defineXML.side_effect = libvirt.libvirtError("invalid XML")
        mock_conn.lookupByName.side_effect = libvirt.libvirtError("Domain not found")
        with pytest.raises(BackendFailure):
            backend.initialize(str(path), "win7-slave")
        assert (path / "disk.qcow2").exists()

        # === Act ===
        with pytest.raises(BackendFailure) as exc_info:
            backend.destroy(str(path))

        # === Assert ===
        assert exc_info.value.operation == "destroy"
        assert not path.exists()

# ===================================================================
#  수명 주기 테스트 스위트
# ===================================================================
class TestLifecycle:
    def test_boot_starts_inactive_domain(self, backend, mock_conn, mock_domain):
        backend.boot("/srv/agents/abc123")

        mock_conn.lookupByName.assert_called_once_with("abc123")
        mock_domain.create.assert_called_once_with()

    def test_boot_skips_active_domain(self, backend, mock_domain):
        mock_domain.isActive.return_value = 1

        backend.boot("/srv/agents/abc123")

        mock_domain.create.assert_not_called()

    def test_status_maps_domain_state(self, backend, mock_domain):
        mock_domain.name.return_value = "abc123"
        mock_domain.info.return_value = [libvirt.VIR_DOMAIN_RUNNING, 0, 0, 2, 0]

        assert backend.status("/srv/agents/abc123") == [MachineStatus(name="abc123", state="RUNNING")]

    def test_snapshot_returns_snapshot_name(self, backend, mock_domain):
        mock_domain.snapshotCreateXML.return_value.getName.return_value = "baseline-abc"

        assert backend.snapshot("/srv/agents/abc123", "baseline-abc") == "baseline-abc"
        assert "<name>baseline-abc</name>" in mock_domain.snapshotCreateXML.call_args.args[0]

    def test_restore_snapshot_reverts_domain(self, backend, mock_domain):
        backend.restore_snapshot("/srv/agents/abc123", "baseline-abc")

        mock_domain.snapshotLookupByName.assert_called_once_with("baseline-abc", 0)
        mock_domain.revertToSnapshot.assert_called_once_with(mock_domain.snapshotLookupByName.return_value, 0)

    def test_halt_powers_off_active_domain(self, backend, mock_domain):
        mock_domain.isActive.return_value = 1

        backend.halt("/srv/agents/abc123")

        mock_domain.destroy.assert_called_once_with()
        mock_domain.undefineFlags.assert_not_called()

    def test_destroy_undefines_domain_and_removes_directory(self, backend, mock_domain, tmp_path):
        path = tmp_path / "abc123"
        path.mkdir()
        (path / "disk.qcow2").write_bytes(b"")

        backend.destroy(str(path))

        mock_domain.undefineFlags.assert_called_once_with(libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA)
        assert not path.exists()

    def test_destroy_removes_directory_even_when_undefine_fails(self, backend, mock_domain, tmp_path):
        path = tmp_path / "abc123"
        path.mkdir()
        mock_domain.undefineFlags.side_effect = libvirt.libvirtError("operation failed")

        with pytest.raises(BackendFailure):
            backend.destroy(str(path))

        assert not path.exists()

    def test_missing_domain(self, backend, mock_conn):
        mock_conn.lookupByName.side_effect = libvirt.libvirtError("Domain not found")

        assert backend.exists("/srv/agents/abc123") is False
        with pytest.raises(BackendFailure) as exc_info:
            backend.halt("/srv/agents/abc123")
        assert exc_info.value.operation == "halt"

    def test_exists(self, backend, mock_domain):
        assert backend.exists("/srv/agents/abc123") is True
