# src/agentfleet/config.py
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from agentfleet.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/jenkins-agent-manager/config.json"
SUPPORTED_BACKENDS = ("vagrant", "libvirt")

# 이진 단위(1KB = 1024B)를 사용합니다. 예: "2048MB" -> 2147483648
_UNIT_MULTIPLIERS = {
    "B": 1,
    "K": 1024, "KB": 1024, "KIB": 1024,
    "M": 1024 ** 2, "MB": 1024 ** 2, "MIB": 1024 ** 2,
    "G": 1024 ** 3, "GB": 1024 ** 3, "GIB": 1024 ** 3,
    "T": 1024 ** 4, "TB": 1024 ** 4, "TIB": 1024 ** 4,
}
_MEMORY_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


def parse_memory_size(value: Any) -> int:
    """
    "<크기><단위>" 형식의 메모리 문자열을 바이트 수로 변환합니다.

    Raises:
        ConfigurationError: 형식이 잘못되었거나 지원하지 않는 단위일 때.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid memory size: {value!r}")
    if isinstance(value, int):
        return value
    match = _MEMORY_PATTERN.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid memory size: {value!r}")
    size, unit = match.groups()
    multiplier = _UNIT_MULTIPLIERS.get(unit.upper() or "B")
    if multiplier is None:
        raise ConfigurationError(f"Unknown memory unit '{unit}' in {value!r}")
    return int(size) * multiplier


@dataclass
class BoxConfig:
    name: str
    labels: List[str]
    memory_bytes: int


@dataclass
class Configuration:
    jenkins_api_url: str
    max_vm_count: int
    working_dir_path: str
    boxes: List[BoxConfig]
    jenkins_api_secret: str = ""
    listener_port: int = 8888
    database_url: str = ""
    backend: str = "vagrant"
    command_timeout_seconds: int = 900
    oracle_timeout_seconds: int = 10
    oracle_node_name: str = "master"
    libvirt_uri: str = "qemu:///system"
    image_dir: str = "/var/lib/libvirt/images"
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if not self.database_url:
            self.database_url = "sqlite:///" + os.path.join(self.working_dir_path, "agentfleet.db")


def _require(data: Dict[str, Any], key: str):
    if key not in data:
        raise ConfigurationError(f"Missing required configuration key '{key}'.")
    return data[key]


def _parse_int(data: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    raw = data.get(key, default)
    try:
        if isinstance(raw, bool):
            raise ValueError(raw)
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Configuration key '{key}' must be an integer, got {raw!r}.")
    if value < minimum:
        raise ConfigurationError(f"Configuration key '{key}' must be at least {minimum}, got {value}.")
    return value


def _parse_boxes(raw_boxes: Any) -> List[BoxConfig]:
    if not isinstance(raw_boxes, list):
        raise ConfigurationError("Configuration key 'boxes' must be a list.")
    boxes = []
    for index, raw in enumerate(raw_boxes):
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ConfigurationError(f"Box #{index} must be an object with a 'name'.")
        labels = raw.get("labels", [])
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise ConfigurationError(f"Box '{raw['name']}' must list its labels as strings.")
        if "memory" not in raw:
            raise ConfigurationError(f"Box '{raw['name']}' has no 'memory' requirement.")
        boxes.append(BoxConfig(
            name=raw["name"],
            labels=labels,
            memory_bytes=parse_memory_size(raw["memory"]),
        ))
    return boxes


def parse_configuration(data: Dict[str, Any]) -> Configuration:
    """이미 JSON으로 읽어온 딕셔너리에서 Configuration 객체를 만듭니다."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration root must be a JSON object.")

    backend = data.get("backend", "vagrant")
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigurationError(f"Unsupported backend '{backend}'. Use one of {', '.join(SUPPORTED_BACKENDS)}.")

    known = set(Configuration.__dataclass_fields__) | {"boxes"}
    return Configuration(
        jenkins_api_url=_require(data, "jenkins_api_url").rstrip("/"),
        max_vm_count=_parse_int(data, "max_vm_count", _require(data, "max_vm_count"), minimum=1),
        working_dir_path=_require(data, "working_dir_path"),
        boxes=_parse_boxes(_require(data, "boxes")),
        jenkins_api_secret=data.get("jenkins_api_secret", ""),
        listener_port=_parse_int(data, "listener_port", 8888, minimum=1),
        database_url=data.get("database_url", ""),
        backend=backend,
        command_timeout_seconds=_parse_int(data, "command_timeout_seconds", 900, minimum=1),
        oracle_timeout_seconds=_parse_int(data, "oracle_timeout_seconds", 10, minimum=1),
        oracle_node_name=data.get("oracle_node_name", "master"),
        libvirt_uri=data.get("libvirt_uri", "qemu:///system"),
        image_dir=data.get("image_dir", "/var/lib/libvirt/images"),
        extra={k: v for k, v in data.items() if k not in known},
    )


def load_configuration(path: str) -> Configuration:
    """
    JSON 설정 파일을 읽어 Configuration 객체를 반환합니다.

    Raises:
        ConfigurationError: 파일을 읽을 수 없거나 JSON 형식 또는 값이 잘못되었을 때.
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found at {path}.")
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Error while reading the configuration file {path}: {e}") from e

    config = parse_configuration(data)
    if config.extra:
        logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(config.extra)))
    return config
