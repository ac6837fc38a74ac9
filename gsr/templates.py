from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import yaml

from .db import log_event
from .settings import settings

SPIGOT_YML = "spigot.yml"
PAPER_GLOBAL_YML = "paper-global.yml"
PAPER_WORLD_DEFAULTS_YML = "paper-world-defaults.yml"
SERVER_PROPERTIES = "server.properties"

# Fetched from the template source, keyed by engine version.
REMOTE_FILES = (SPIGOT_YML, PAPER_GLOBAL_YML, PAPER_WORLD_DEFAULTS_YML)

# Order is preserved in the generated file.
DEFAULT_SERVER_PROPERTIES: dict[str, str] = {
    "motd": "A Minecraft Server",
    "max-players": "20",
    "difficulty": "easy",
    "gamemode": "survival",
    "pvp": "true",
    "view-distance": "10",
    "simulation-distance": "10",
    "spawn-protection": "16",
    "enable-status": "true",
    "enforce-secure-profile": "false",
    "prevent-proxy-connections": "false",
}


class TemplateSource:
    """Fetches version-keyed default config files over HTTP.

    Failures never raise: the caller gets an empty string and an event is
    logged, so the artifact can still be built from whatever was retrieved.
    """

    def __init__(self, base_url: str | None = None, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.base_url = (base_url or settings.template_base_url).rstrip("/")
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.template_timeout_s)
        self._transport = transport

    def url_for(self, version: str, filename: str) -> str:
        return f"{self.base_url}/{version}/{filename}"

    def fetch(self, version: str, filename: str) -> str:
        url = self.url_for(version, filename)
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=True, transport=self._transport) as c:
                resp = c.get(url)
            if resp.status_code != 200:
                log_event("ERROR", f"Template fetch {url} returned HTTP {resp.status_code}")
                return ""
            return resp.text
        except httpx.HTTPError as e:
            log_event("ERROR", f"Template fetch {url} failed: {type(e).__name__}: {e}")
            return ""


def patch_paper_global(raw: str, secret: str) -> str:
    """Trust the managed proxy: enable modern forwarding and disable the engine's own auth."""
    if not raw.strip():
        return raw
    try:
        doc: Any = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        log_event("WARN", f"{PAPER_GLOBAL_YML} is not valid YAML, left unpatched: {e}")
        return raw
    if not isinstance(doc, dict):
        log_event("WARN", f"{PAPER_GLOBAL_YML} is not a mapping, left unpatched")
        return raw

    proxies = doc.get("proxies")
    if not isinstance(proxies, dict):
        proxies = doc["proxies"] = {}
    velocity = proxies.get("velocity")
    if not isinstance(velocity, dict):
        velocity = proxies["velocity"] = {}
    velocity["enabled"] = True
    velocity["online-mode"] = False
    velocity["secret"] = secret
    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def render_server_properties(overrides: dict[str, str] | None = None) -> str:
    props = dict(DEFAULT_SERVER_PROPERTIES)
    props.update(overrides or {})
    # Always behind the proxy.
    props["online-mode"] = "false"
    return "".join(f"{k}={v}\n" for k, v in props.items())


@dataclass(frozen=True)
class ConfigBundle:
    files: dict[str, str]

    @property
    def missing(self) -> list[str]:
        return [name for name, text in self.files.items() if not text]


def build_bundle(source: TemplateSource, version: str, secret: str, server_port: int) -> ConfigBundle:
    """Fetch the remote templates for ``version`` and apply the deterministic patches."""
    files: dict[str, str] = {}
    for name in REMOTE_FILES:
        files[name] = source.fetch(version, name)
    files[PAPER_GLOBAL_YML] = patch_paper_global(files[PAPER_GLOBAL_YML], secret)
    files[SERVER_PROPERTIES] = render_server_properties({"server-port": str(server_port)})
    return ConfigBundle(files=files)
