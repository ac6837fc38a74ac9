from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("GSR_DB_PATH", "gsr.db")
    namespace: str = os.getenv("GSR_NAMESPACE", "default")
    event_retention: int = _env_int("GSR_EVENT_RETENTION", 5000)
    log_level: str = os.getenv("GSR_LOG_LEVEL", "INFO")

    # Custom resources
    api_group: str = os.getenv("GSR_API_GROUP", "gsr.dev")
    api_version: str = os.getenv("GSR_API_VERSION", "v1alpha1")
    group_plural: str = os.getenv("GSR_GROUP_PLURAL", "servergroups")
    proxy_plural: str = os.getenv("GSR_PROXY_PLURAL", "proxies")

    # Dispatcher
    workers: int = _env_int("GSR_WORKERS", 4)
    resync_interval_s: int = _env_int("GSR_RESYNC_INTERVAL_S", 30)
    retry_delay_s: int = _env_int("GSR_RETRY_DELAY_S", 5)
    watch_timeout_s: int = _env_int("GSR_WATCH_TIMEOUT_S", 300)

    # Config templates
    template_base_url: str = os.getenv(
        "GSR_TEMPLATE_BASE_URL",
        "https://raw.githubusercontent.com/dayyeeet/minecraft-default-configs/main",
    )
    template_timeout_s: int = _env_int("GSR_TEMPLATE_TIMEOUT_S", 10)
    # Shared between the engine's paper-global.yml and the proxy's modern forwarding.
    forwarding_secret: str = os.getenv("GSR_FORWARDING_SECRET", "change-me")

    # Workload images
    server_image: str = os.getenv("GSR_SERVER_IMAGE", "itzg/minecraft-server:latest")
    init_image: str = os.getenv("GSR_INIT_IMAGE", "busybox:1.36")
    proxy_image: str = os.getenv("GSR_PROXY_IMAGE", "itzg/mc-proxy:latest")
    server_port: int = _env_int("GSR_SERVER_PORT", 25565)

    # Proxies
    public_api_url: str = os.getenv("GSR_PUBLIC_API_URL", "http://gsr-operator.gsr-system.svc:8000")
    proxy_service_type: str = os.getenv("GSR_PROXY_SERVICE_TYPE", "LoadBalancer")

    # Live updates
    subscriber_timeout_s: int = _env_int("GSR_SUBSCRIBER_TIMEOUT_S", 1800)
    keepalive_s: int = _env_int("GSR_KEEPALIVE_S", 15)

    # HTTP
    host: str = os.getenv("GSR_HOST", "0.0.0.0")
    port: int = _env_int("GSR_PORT", 8000)
    start_dispatcher: bool = _env_bool("GSR_START_DISPATCHER", True)


settings = Settings()
