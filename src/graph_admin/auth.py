from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import msal
from azure.identity import ManagedIdentityCredential

from .audit import JsonAuditLogger
from .config import CertificateAuth, ClientSecretAuth, ManagedIdentityAuth, TenantConfig

logger = logging.getLogger(__name__)


class GraphAuthenticator:
    """Acquires app-only tokens for Microsoft Graph in one tenant.

    Client secret and certificate flows go through a single MSAL confidential
    client per authenticator, so repeated calls are served from the MSAL token
    cache until the token nears expiry. Managed identity relies on the
    platform endpoint and its own cache.
    """

    def __init__(self, tenant_config: TenantConfig, audit_logger: JsonAuditLogger):
        self.tenant_config = tenant_config
        self.audit = audit_logger
        self._app: Optional[msal.ConfidentialClientApplication] = None
        self._credential: Optional[ManagedIdentityCredential] = None
        self._lock = threading.Lock()

    def acquire_token(self, scopes: Iterable[str]) -> str:
        scopes = list(scopes)
        auth_config = self.tenant_config.auth

        if isinstance(auth_config, (ClientSecretAuth, CertificateAuth)):
            app = self._confidential_client()
            result = app.acquire_token_silent(scopes, account=None)
            if not result:
                result = app.acquire_token_for_client(scopes=scopes)
                self.audit.info(
                    "acquired_app_token",
                    tenant_id=self.tenant_config.tenant_id,
                    auth_type=auth_config.type,
                )
            return self._extract_token(result)

        if isinstance(auth_config, ManagedIdentityAuth):
            with self._lock:
                if self._credential is None:
                    self._credential = ManagedIdentityCredential(client_id=auth_config.client_id)
            token = self._credential.get_token(*scopes)
            self.audit.info(
                "acquired_app_token",
                tenant_id=self.tenant_config.tenant_id,
                auth_type=auth_config.type,
            )
            return token.token

        raise ValueError("Unsupported authentication configuration")

    def _confidential_client(self) -> msal.ConfidentialClientApplication:
        # Parallel workers share one authenticator per tenant.
        with self._lock:
            if self._app is None:
                self._app = self._build_confidential_client()
            return self._app

    def _build_confidential_client(self) -> msal.ConfidentialClientApplication:
        auth_config = self.tenant_config.auth
        credential: Any
        if isinstance(auth_config, ClientSecretAuth):
            credential = auth_config.client_secret.resolve()
        else:
            credential = self._load_certificate(auth_config)

        return msal.ConfidentialClientApplication(
            client_id=auth_config.client_id,
            client_credential=credential,
            authority=f"{auth_config.authority_host}/{self.tenant_config.tenant_id}",
            token_cache=msal.TokenCache(),
        )

    @staticmethod
    def _extract_token(result: Optional[dict]) -> str:
        if not result or "access_token" not in result:
            details = {k: v for k, v in (result or {}).items() if k != "access_token"}
            raise RuntimeError(f"Token acquisition failed: {json.dumps(details)}")
        return result["access_token"]

    @staticmethod
    def _load_certificate(auth_config: CertificateAuth) -> Dict[str, Any]:
        path = Path(auth_config.certificate_path)
        try:
            private_key = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RuntimeError(f"Failed to read certificate at {path}: {exc}") from exc

        credential: Dict[str, Any] = {
            "private_key": private_key,
            "thumbprint": auth_config.thumbprint,
        }
        if auth_config.certificate_password:
            credential["passphrase"] = auth_config.certificate_password.resolve()
        return credential
