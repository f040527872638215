from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .resilience import RetryPolicy


class SecretRef(BaseModel):
    """Reference to a secret without storing it in the configuration file.

    Only environment variables and inline values are resolved. Inline values
    are meant for local testing against a development tenant.
    """

    env: Optional[str] = Field(
        default=None, description="Environment variable name containing the secret"
    )
    value: Optional[str] = Field(
        default=None,
        description="Inline value (use only for local development)",
    )

    model_config = ConfigDict(extra="forbid")

    def resolve(self) -> str:
        if self.env:
            env_value = os.getenv(self.env)
            if env_value:
                return env_value
            raise ValueError(f"Environment variable {self.env} is not set")
        if self.value:
            return self.value
        raise ValueError("No secret reference provided for resolution")


class ClientSecretAuth(BaseModel):
    type: Literal["client_secret"]
    client_id: str
    client_secret: SecretRef
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID authority host",
    )

    model_config = ConfigDict(extra="forbid")


class CertificateAuth(BaseModel):
    type: Literal["certificate"]
    client_id: str
    certificate_path: Path
    thumbprint: str = Field(description="SHA-1 thumbprint of the certificate registered on the app")
    certificate_password: Optional[SecretRef] = None
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID authority host",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("thumbprint")
    @classmethod
    def normalize_thumbprint(cls, value: str) -> str:
        value = value.replace(":", "").replace(" ", "").upper()
        if not value:
            raise ValueError("thumbprint is required for certificate auth")
        return value


class ManagedIdentityAuth(BaseModel):
    type: Literal["managed_identity"]
    client_id: Optional[str] = Field(
        default=None, description="Optional user-assigned managed identity client ID"
    )

    model_config = ConfigDict(extra="forbid")


AuthConfig = Union[ClientSecretAuth, CertificateAuth, ManagedIdentityAuth]


class TenantConfig(BaseModel):
    tenant_id: str
    display_name: Optional[str] = None
    auth: AuthConfig
    default_scopes: List[str] = Field(
        default_factory=lambda: ["https://graph.microsoft.com/.default"]
    )
    graph_base_url: str = Field(
        default="https://graph.microsoft.com",
        description="Graph endpoint. Override for national clouds if needed.",
    )
    api_version: Literal["v1.0", "beta"] = "v1.0"
    retry: Optional[RetryPolicy] = Field(
        default=None,
        description="Per-tenant retry policy; falls back to the top-level policy",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("default_scopes")
    @classmethod
    def ensure_scopes(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one scope must be provided per tenant")
        return value

    @field_validator("graph_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class AdminConfig(BaseModel):
    tenants: List[TenantConfig]
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "AdminConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

        return cls(**raw)

    def retry_policy_for(self, tenant: TenantConfig) -> RetryPolicy:
        return tenant.retry or self.retry
