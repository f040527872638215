import io
import threading
import uuid
from typing import Dict, List

import httpx
import pytest

from graph_admin.audit import JsonAuditLogger
from graph_admin.config import AdminConfig, TenantConfig
from graph_admin.graph_client import GraphClient
from graph_admin.resilience import ResilientCallExecutor, RetryPolicy

TENANT_ID = "11111111-2222-3333-4444-555555555555"
GRAPH = "https://graph.microsoft.com/v1.0"


class FakeAuthenticator:
    def __init__(self, token: str = "test-token"):
        self.token = token
        self.calls = 0

    def acquire_token(self, scopes) -> str:
        self.calls += 1
        return self.token


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def audit_logger(log_stream) -> JsonAuditLogger:
    return JsonAuditLogger(name=f"graph_admin.test.{uuid.uuid4()}", stream=log_stream)


@pytest.fixture
def admin_config() -> AdminConfig:
    return AdminConfig(
        tenants=[
            {
                "tenant_id": TENANT_ID,
                "display_name": "Contoso",
                "auth": {
                    "type": "client_secret",
                    "client_id": "app-id",
                    "client_secret": {"value": "secret"},
                },
            }
        ],
        retry={"max_retries": 3, "base_delay_seconds": 1},
    )


@pytest.fixture
def tenant(admin_config) -> TenantConfig:
    return admin_config.tenants[0]


class GraphStub:
    """Routes requests to canned responses keyed by (method, path)."""

    def __init__(self):
        self.routes: Dict[tuple, List[httpx.Response]] = {}
        self.requests: List[httpx.Request] = []
        self._lock = threading.Lock()

    def add(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            queue = self.routes.get((request.method, request.url.path))
            if not queue:
                return httpx.Response(404, json={"error": {"code": "Request_ResourceNotFound", "message": "no route"}})
            # The last response repeats once the queue is drained.
            canned = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(canned.status_code, headers=canned.headers, content=canned.content)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def graph_stub() -> GraphStub:
    return GraphStub()


@pytest.fixture
def make_client(tenant, audit_logger, sleeper, graph_stub):
    def factory(policy: RetryPolicy = RetryPolicy(max_retries=3, base_delay_seconds=1)) -> GraphClient:
        return GraphClient(
            tenant_config=tenant,
            authenticator=FakeAuthenticator(),
            audit_logger=audit_logger,
            executor=ResilientCallExecutor(policy=policy, sleep=sleeper),
            transport=httpx.MockTransport(graph_stub),
        )

    return factory
