from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Dict, Optional, TypeVar

import httpx

from .audit import JsonAuditLogger
from .auth import GraphAuthenticator
from .config import AdminConfig, TenantConfig
from .graph_client import GraphClient, TokenProvider
from .operations import TenantExecutionContext, TenantOperations
from .resilience import ResilientCallExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TenantManager:
    """Resolves tenants and runs operations against a fresh Graph session."""

    def __init__(
        self,
        config: AdminConfig,
        audit_logger: Optional[JsonAuditLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: Optional[httpx.BaseTransport] = None,
        authenticator_factory: Callable[[TenantConfig, JsonAuditLogger], TokenProvider] = GraphAuthenticator,
    ):
        self.config = config
        self.audit = audit_logger or JsonAuditLogger()
        self.sleep = sleep
        self.transport = transport
        self.authenticator_factory = authenticator_factory
        self._tenant_cache: Dict[str, TenantConfig] = {tenant.tenant_id: tenant for tenant in config.tenants}
        self._authenticators: Dict[str, TokenProvider] = {}

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        tenant = self._tenant_cache.get(tenant_id)
        if not tenant:
            raise KeyError(f"Tenant {tenant_id} is not configured")
        return tenant

    def onboard_tenant(self, tenant: TenantConfig) -> None:
        self._tenant_cache[tenant.tenant_id] = tenant
        self.audit.info("tenant_onboarded", tenant_id=tenant.tenant_id, display_name=tenant.display_name)

    def offboard_tenant(self, tenant_id: str) -> None:
        self._tenant_cache.pop(tenant_id, None)
        self._authenticators.pop(tenant_id, None)
        self.audit.info("tenant_offboarded", tenant_id=tenant_id)

    def authenticator(self, tenant: TenantConfig) -> TokenProvider:
        if tenant.tenant_id not in self._authenticators:
            self._authenticators[tenant.tenant_id] = self.authenticator_factory(tenant, self.audit)
        return self._authenticators[tenant.tenant_id]

    def build_executor(self, tenant: TenantConfig) -> ResilientCallExecutor:
        return ResilientCallExecutor(
            policy=self.config.retry_policy_for(tenant),
            sleep=self.sleep,
            audit_logger=self.audit,
        )

    def graph_client(self, tenant_id: str) -> GraphClient:
        tenant = self.get_tenant(tenant_id)
        return GraphClient(
            tenant_config=tenant,
            authenticator=self.authenticator(tenant),
            audit_logger=self.audit,
            executor=self.build_executor(tenant),
            transport=self.transport,
        )

    def run_operation(
        self,
        tenant_id: str,
        operation: Callable[[TenantOperations], T],
        correlation_id: Optional[str] = None,
    ) -> T:
        correlation_id = correlation_id or str(uuid.uuid4())
        with self.graph_client(tenant_id) as graph:
            context = TenantExecutionContext(
                tenant_id=tenant_id,
                graph=graph,
                client_factory=lambda: self.graph_client(tenant_id),
            )
            self.audit.info("operation_started", tenant_id=tenant_id, correlation_id=correlation_id)
            try:
                result = operation(TenantOperations(context))
            except Exception as exc:
                self.audit.error(
                    "operation_failed",
                    tenant_id=tenant_id,
                    correlation_id=correlation_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self.audit.info("operation_completed", tenant_id=tenant_id, correlation_id=correlation_id)
        return result
