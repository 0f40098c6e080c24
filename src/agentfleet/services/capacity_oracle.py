import logging

import requests

from agentfleet.services.exceptions import OracleUnavailableError

logger = logging.getLogger(__name__)

SWAP_SPACE_MONITOR = "hudson.node_monitors.SwapSpaceMonitor"
# 최신 Jenkins는 컨트롤러 노드를 "Built-In Node"로 표시합니다.
BUILT_IN_NODE_NAMES = ("master", "Built-In Node")


class JenkinsCapacityOracle:
    """Jenkins 관리 API(/computer/api/json)에서 컨트롤러 노드의 여유 물리 메모리를 조회합니다."""

    def __init__(self, base_url: str, api_secret: str = "", node_name: str = "master", timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.api_secret = api_secret
        self.node_name = node_name
        self.timeout = timeout

    def _node_names(self):
        if self.node_name in BUILT_IN_NODE_NAMES:
            return BUILT_IN_NODE_NAMES
        return (self.node_name,)

    def _request_computer_info(self) -> dict:
        url = f"{self.base_url}/computer/api/json"
        params = {"depth": 2}
        if self.api_secret:
            params["token"] = self.api_secret
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise OracleUnavailableError(f"Failed to query Jenkins computer info at {url}: {e}") from e
        except ValueError as e:
            raise OracleUnavailableError(f"Jenkins returned invalid JSON from {url}: {e}") from e

    def get_free_memory(self) -> int:
        """
        컨트롤러 노드의 사용 가능한 물리 메모리(바이트)를 반환합니다.

        Raises:
            OracleUnavailableError: 요청 실패, 잘못된 응답, 노드 또는 모니터 데이터가 없을 때.
        """
        info = self._request_computer_info()
        names = self._node_names()
        for computer in info.get("computer", []) or []:
            if computer.get("displayName") not in names:
                continue
            monitor = (computer.get("monitorData") or {}).get(SWAP_SPACE_MONITOR) or {}
            free = monitor.get("availablePhysicalMemory")
            if not isinstance(free, int) or isinstance(free, bool):
                raise OracleUnavailableError(
                    f"Node '{computer.get('displayName')}' reports no available physical memory."
                )
            logger.debug("Jenkins node '%s' reports %d bytes of free memory", computer.get("displayName"), free)
            return free
        raise OracleUnavailableError(f"Jenkins node '{self.node_name}' not found in computer info.")
