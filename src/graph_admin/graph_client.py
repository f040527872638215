from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional, Protocol

import httpx

from .audit import JsonAuditLogger
from .config import TenantConfig
from .errors import GraphFailure, failure_from_response, failure_from_transport_error
from .resilience import ResilientCallExecutor

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    def acquire_token(self, scopes: Any) -> str: ...


class GraphClient:
    """Tenant-scoped Microsoft Graph session.

    Owns one ``httpx.Client``. Every request is a single HTTP call run through
    the client's :class:`ResilientCallExecutor`; error responses are raised as
    ``GraphFailure`` so the executor can decide whether to retry.
    """

    def __init__(
        self,
        tenant_config: TenantConfig,
        authenticator: TokenProvider,
        audit_logger: JsonAuditLogger,
        executor: Optional[ResilientCallExecutor] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.tenant_config = tenant_config
        self.authenticator = authenticator
        self.audit = audit_logger
        self.executor = executor or ResilientCallExecutor(audit_logger=audit_logger)
        self.timeout = timeout
        self.session = httpx.Client(timeout=self.timeout, transport=transport)

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    @property
    def base_url(self) -> str:
        return f"{self.tenant_config.graph_base_url}/{self.tenant_config.api_version}"

    def url_for(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Perform exactly one request; raise GraphFailure on an error status."""
        url = self.url_for(path)
        headers = dict(kwargs.pop("headers", None) or {})
        token = self.authenticator.acquire_token(self.tenant_config.default_scopes)
        headers["Authorization"] = f"Bearer {token}"

        try:
            response = self.session.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise failure_from_transport_error(exc) from exc

        if response.status_code >= 400:
            raise failure_from_response(response)

        return response

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Run ``send`` through the executor; only the final failure is logged."""
        try:
            response = self.executor.execute(
                lambda: self.send(method, path, **kwargs),
                tenant_id=self.tenant_config.tenant_id,
                method=method,
                path=path,
            )
        except GraphFailure as failure:
            self.audit.warning(
                "graph_request_failed",
                tenant_id=self.tenant_config.tenant_id,
                method=method,
                url=self.url_for(path),
                status=failure.status_code,
                code=failure.code,
            )
            raise
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return response

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, json: Any, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, json=json, **kwargs)

    def get_json(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self.get(path, **kwargs).json()

    def paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every record of a collection, following ``@odata.nextLink``.

        The next link already carries the original query, so ``params`` are
        only sent with the first page.
        """
        url: Optional[str] = path
        page_params = params
        while url:
            data = self.get_json(url, params=page_params, headers=headers)
            yield from data.get("value", [])
            url = data.get("@odata.nextLink")
            page_params = None

    def count(self, path: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Return ``$count`` for a directory collection (advanced query)."""
        response = self.get(
            f"{path.rstrip('/')}/$count",
            params=params,
            headers={"ConsistencyLevel": "eventual"},
        )
        return int(response.text.strip().lstrip("\ufeff"))
