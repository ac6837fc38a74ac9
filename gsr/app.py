from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from .cluster import ClusterError, KubernetesCluster, load_client_config, validate_resource_name
from .db import init_db, latest_events, log_event
from .notifications import NotificationHub, StreamSubscriber, cluster_group_source
from .proxies import CONNECT_PATH
from .reconciler import Dispatcher, GroupController, ProxyController
from .resources import KIND_GROUP, KIND_PROXY, Proxy, ResourceKey, ServerGroup
from .settings import settings
from .templates import TemplateSource

# Path segment accepted by the manual reconcile route.
RECONCILE_KINDS = {"group": KIND_GROUP, "proxy": KIND_PROXY}


def format_sse(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"


def _group_view(g: ServerGroup) -> dict[str, Any]:
    return {
        "name": g.name,
        "namespace": g.namespace,
        "generation": g.generation,
        "spec": g.spec.model_dump(by_alias=True),
        "status": g.status.to_object(),
    }


def _proxy_view(p: Proxy) -> dict[str, Any]:
    return {
        "name": p.name,
        "namespace": p.namespace,
        "generation": p.generation,
        "spec": p.spec.model_dump(by_alias=True, exclude={"forwarding_secret"}),
        "status": p.status.to_object(),
    }


def _check_name(name: str) -> None:
    try:
        validate_resource_name(name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def create_app(cluster: Any = None, start: bool | None = None, source: TemplateSource | None = None) -> FastAPI:
    """Build the operator app.

    ``cluster`` defaults to a ``KubernetesCluster`` created at startup;
    ``start=False`` wires everything but leaves the dispatcher threads off.
    """
    run_dispatcher = settings.start_dispatcher if start is None else start

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db()
        cl = cluster
        if cl is None:
            load_client_config()
            cl = KubernetesCluster()
        hub = NotificationHub(group_source=cluster_group_source(cl, settings.namespace))
        dispatcher = Dispatcher(cl, [GroupController(cl, hub, source=source), ProxyController(cl)])
        app.state.cluster = cl
        app.state.hub = hub
        app.state.dispatcher = dispatcher
        if run_dispatcher:
            dispatcher.start()
        yield
        dispatcher.stop()
        log_event("INFO", "Dispatcher stopped")

    app = FastAPI(title="Game Server Reconciler", version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, Any]:
        dispatcher: Dispatcher = request.app.state.dispatcher
        return {
            "status": "ok",
            "dispatcher": "running" if dispatcher.running else "stopped",
            "pending": dispatcher.runtime.pending(),
            "subscribers": len(request.app.state.hub.registry),
        }

    @app.get("/api/v1/groups")
    def list_groups(request: Request) -> list[dict[str, Any]]:
        try:
            groups = request.app.state.cluster.list_groups(settings.namespace)
        except ClusterError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return [_group_view(g) for g in sorted(groups, key=lambda g: g.name)]

    # Registered before /groups/{name} so "connect" is not taken for a group name.
    @app.get(CONNECT_PATH)
    async def connect(request: Request) -> StreamingResponse:
        hub: NotificationHub = request.app.state.hub
        sub = StreamSubscriber(asyncio.get_running_loop(), timeout_s=settings.subscriber_timeout_s)
        hub.subscribe(sub)
        # Listing groups is a blocking API call; the wait below is not.
        await run_in_threadpool(hub.publish_initial, sub)

        async def stream():
            try:
                while not sub.closed:
                    if await request.is_disconnected():
                        break
                    item = await sub.next_event(settings.keepalive_s)
                    if item is None:
                        if not sub.closed:
                            yield ": keepalive\n\n"
                        continue
                    yield format_sse(*item)
            finally:
                sub.close()

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/v1/groups/{name}")
    def get_group(name: str, request: Request) -> dict[str, Any]:
        _check_name(name)
        try:
            group = request.app.state.cluster.get_group(settings.namespace, name)
        except ClusterError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        if group is None:
            raise HTTPException(status_code=404, detail=f"Unknown group '{name}'")
        return _group_view(group)

    @app.get("/api/v1/proxies")
    def list_proxies(request: Request) -> list[dict[str, Any]]:
        try:
            proxies = request.app.state.cluster.list_proxies(settings.namespace)
        except ClusterError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return [_proxy_view(p) for p in sorted(proxies, key=lambda p: p.name)]

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), group: str | None = None) -> list[dict[str, Any]]:
        return latest_events(limit=limit, group_name=group)

    @app.post("/api/v1/reconcile/{kind}/{name}", status_code=202)
    def reconcile(kind: str, name: str, request: Request) -> dict[str, Any]:
        resolved = RECONCILE_KINDS.get(kind.lower())
        if resolved is None:
            raise HTTPException(status_code=404, detail=f"Unknown kind '{kind}', expected one of {sorted(RECONCILE_KINDS)}")
        _check_name(name)
        key = ResourceKey(resolved, settings.namespace, name)
        request.app.state.dispatcher.enqueue(key)
        log_event("INFO", "Manual reconcile requested", group_name=name, kind=resolved)
        return {"queued": str(key)}

    return app


app = create_app()
