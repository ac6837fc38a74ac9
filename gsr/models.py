from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .settings import settings


class _CamelModel(BaseModel):
    # Custom resources are authored in camelCase; Python code uses snake_case.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ResourceRequirements(_CamelModel):
    limits: dict[str, str] = Field(default_factory=dict)
    requests: dict[str, str] = Field(default_factory=dict)

    def to_manifest(self) -> dict[str, dict[str, str]]:
        out: dict[str, dict[str, str]] = {}
        if self.limits:
            out["limits"] = dict(self.limits)
        if self.requests:
            out["requests"] = dict(self.requests)
        return out


class GroupSpec(_CamelModel):
    engine_version: str = Field("LATEST", alias="engineVersion", description="Engine version, keys the config templates")
    replicas: int = Field(1, ge=0, le=500)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    force_recreate: bool = Field(False, alias="forceRecreate", description="Recreate every instance on spec edits")
    eula: bool = False


class ProxySpec(_CamelModel):
    replicas: int = Field(1, ge=0, le=100)
    port: int = Field(25565, ge=1, le=65535, description="Exposed over TCP and UDP")
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)

    motd: str = "<#09add3>A Velocity Server"
    show_max_players: int = Field(500, alias="showMaxPlayers", ge=0)
    online_mode: bool = Field(True, alias="onlineMode")
    force_key_authentication: bool = Field(True, alias="forceKeyAuthentication")
    player_info_forwarding_mode: str = Field("MODERN", alias="playerInfoForwardingMode")
    forwarding_secret: str | None = Field(None, alias="forwardingSecret")
    compression_threshold: int = Field(256, alias="compressionThreshold")
    connection_timeout: int = Field(5000, alias="connectionTimeout", ge=0)
    read_timeout: int = Field(30000, alias="readTimeout", ge=0)
    query_enabled: bool = Field(False, alias="queryEnabled")
    query_port: int = Field(25577, alias="queryPort", ge=1, le=65535)

    def effective_secret(self) -> str:
        return self.forwarding_secret or settings.forwarding_secret


class GroupTopology(_CamelModel):
    """Payload pushed to live-update subscribers."""

    name: str
    instance_addresses: list[str] = Field(default_factory=list, alias="instanceAddresses")
    is_force: bool = Field(False, alias="isForce")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
