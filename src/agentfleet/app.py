# src/agentfleet/app.py
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIServer, make_server
import json
import logging
import re

from agentfleet.backends import create_backend
from agentfleet.config import Configuration
from agentfleet.database.database import create_db_engine, create_session_factory
from agentfleet.repositories.sqlalchemy import SqlalchemyMachineRepository
from agentfleet.services.admission import AdmissionController
from agentfleet.services.box_catalog import BoxCatalog
from agentfleet.services.capacity_oracle import JenkinsCapacityOracle
from agentfleet.services.exceptions import FleetError
from agentfleet.services.fleet_service import FleetService

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_params(environ):
    """쿼리 문자열과 (POST의 경우) form 본문에서 파라미터를 읽어 하나의 딕셔너리로 합칩니다."""
    params = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}
    if environ.get("REQUEST_METHOD") == "POST" and \
            environ.get("CONTENT_TYPE", "").startswith("application/x-www-form-urlencoded"):
        try:
            content_length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            raise ValueError("Invalid Content-Length header.")
        if content_length > 0:
            body = environ["wsgi.input"].read(content_length).decode("utf-8")
            for k, v in parse_qs(body).items():
                params.setdefault(k, v[0])
    return params

def require_param(environ, name):
    value = get_request_params(environ).get(name, "").strip()
    if not value:
        raise ValueError(f"Missing query parameter '{name}'.")
    return value

def handle_exception(e):
    if isinstance(e, ValueError):
        return "400 Bad Request", json.dumps({"error": str(e)})
    if isinstance(e, FleetError):
        logger.warning("Request failed: %s", e)
    else:
        logger.exception("Unexpected error while handling request")
    return "500 Internal Server Error", json.dumps({"error": str(e)})

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

class FleetApplication:
    """
    요청마다 DB 세션과 리포지토리, FleetService를 새로 만들고,
    백엔드와 승인 제어기처럼 프로세스 전체가 공유해야 하는 객체는 한 번만 만듭니다.
    """

    def __init__(self, config: Configuration, session_factory, backend, capacity_oracle, box_catalog=None):
        self.config = config
        self.session_factory = session_factory
        self.box_catalog = box_catalog or BoxCatalog.from_config(config.boxes)
        self.backend = backend
        self.admission = AdmissionController(config.max_vm_count, capacity_oracle)

    def __call__(self, environ, start_response):
        db_session = self.session_factory()
        try:
            # 1. 의존성 생성 (Repository -> Service)
            machine_repo = SqlalchemyMachineRepository(db_session)
            environ['services'] = {
                'fleet': FleetService(
                    machine_repo, self.backend, self.box_catalog, self.admission, self.config.working_dir_path
                )
            }

            # 2. 라우팅 및 핸들러 실행
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_methods, pattern, route_handler in ROUTES:
                if method in route_methods and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

        except Exception as e:
            status, response_body = handle_exception(e)
        finally:
            db_session.close()

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    def shutdown(self):
        """새 에이전트 시작을 막습니다. 진행 중인 요청은 끝까지 처리됩니다."""
        self.admission.close()


def create_application(config: Configuration, session_factory=None, backend=None, capacity_oracle=None):
    box_catalog = BoxCatalog.from_config(config.boxes)
    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(config.database_url))
    if backend is None:
        backend = create_backend(config, box_catalog)
    if capacity_oracle is None:
        capacity_oracle = JenkinsCapacityOracle(
            config.jenkins_api_url,
            config.jenkins_api_secret,
            node_name=config.oracle_node_name,
            timeout=config.oracle_timeout_seconds,
        )
    return FleetApplication(config, session_factory, backend, capacity_oracle, box_catalog)

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def start_handler(environ, *args):
    label = require_param(environ, 'label')
    machine_id = environ['services']['fleet'].start_agent(label)
    return '200 OK', json.dumps({"state": "Running", "id": machine_id, "label": label})

def destroy_handler(environ, *args):
    machine_id = require_param(environ, 'id')
    machine = environ['services']['fleet'].stop_agent(machine_id)
    return '200 OK', json.dumps({"state": machine.state, "id": machine_id})

def list_machines_handler(environ, *args):
    machines = environ['services']['fleet'].list_machines()
    return '200 OK', json.dumps({"machines": machines})

def get_machine_handler(environ, machine_id):
    machine = environ['services']['fleet'].get_machine(machine_id)
    return '200 OK', json.dumps(machine)

def delete_machine_handler(environ, machine_id):
    environ['services']['fleet'].delete_machine(machine_id)
    return '204 No Content', ''

def reconcile_handler(environ, *args):
    orphaned = environ['services']['fleet'].reconcile()
    return '200 OK', json.dumps({"orphaned": orphaned})

ROUTES = [
    (('GET', 'POST'), r'^/start$', start_handler),
    (('GET', 'POST'), r'^/destroy$', destroy_handler),
    (('GET',), r'^/machines$', list_machines_handler),
    (('GET',), r'^/machines/([a-zA-Z0-9_-]+)$', get_machine_handler),
    (('DELETE',), r'^/machines/([a-zA-Z0-9_-]+)$', delete_machine_handler),
    (('POST',), r'^/reconcile$', reconcile_handler),
]

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """요청마다 스레드를 하나씩 사용합니다. 종료 시 진행 중인 요청 스레드가 끝날 때까지 기다립니다."""
    daemon_threads = False


def serve(config: Configuration, port=None):
    application = create_application(config)
    port = port or config.listener_port
    with make_server("", port, application, server_class=ThreadingWSGIServer) as httpd:
        logger.info("Serving agentfleet on port %d...", port)
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down, waiting for in-flight requests to finish")
        finally:
            application.shutdown()
