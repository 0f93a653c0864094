"""FastAPI surface for the online order sync and offline reconciliation services."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from rental_sync import __version__
from rental_sync.common.app_config_store import AppConfigStore
from rental_sync.common.date_utils import configure_timezone
from rental_sync.common.db import dispose_engines
from rental_sync.common.json_logger import get_logger
from rental_sync.config import Config, ConfigError, get_config
from rental_sync.offline_sync.service import OfflineSyncService
from rental_sync.online_orders.browser import BrowserSession
from rental_sync.online_orders.engine import OnlineOrderSyncEngine
from rental_sync.online_orders.persistence import OrderRepository
from rental_sync.online_orders.run_status import RunState
from rental_sync.online_orders.scheduler import ScrapeScheduler

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)
BROWSER_PROFILE_NAME = "online-orders"


@dataclass
class Services:
    config: Config
    engine: OnlineOrderSyncEngine
    scheduler: ScrapeScheduler
    offline: OfflineSyncService


def build_services(config: Config) -> Services:
    configure_timezone(config.pipeline_timezone)
    store = AppConfigStore(config.database_url)
    repository = OrderRepository(config.database_url)
    base_logger = get_logger()
    session = BrowserSession(
        profile_dir=config.profiles_dir / BROWSER_PROFILE_NAME,
        logger=base_logger,
        chrome_executable=config.chrome_executable,
        display=config.display,
    )
    engine = OnlineOrderSyncEngine(config=config, store=store, repository=repository, session=session)
    return Services(
        config=config,
        engine=engine,
        scheduler=ScrapeScheduler(engine, logger=base_logger),
        offline=OfflineSyncService(config=config, store=store, repository=repository),
    )


class SyncRequest(BaseModel):
    site_id: str = Field(alias="siteId")


class OfflineSyncRequest(BaseModel):
    site_id: str = Field(alias="siteId")


class OfflineConfigRequest(BaseModel):
    enabled: bool = False
    interval_minutes: int = Field(default=60, alias="intervalMinutes")


class InteractRequest(BaseModel):
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


def _parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value}") from exc


def create_app(services: Optional[Services] = None, *, start_background: bool = True) -> FastAPI:
    """Build the app; ``start_background`` controls the schedulers in the lifespan."""

    if services is None:
        services = build_services(get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if start_background:
            services.scheduler.start()
            try:
                sync_config = await services.engine.load_sync_config()
                await services.offline.init_schedulers([site.id for site in sync_config.sites])
            except ConfigError as exc:
                logger.error("Offline sync schedulers not started: %s", exc)
        try:
            yield
        finally:
            await services.scheduler.stop()
            await services.offline.stop()
            await services.engine.session.close()
            await dispose_engines()

    app = FastAPI(title="Rental Order Sync API", version=__version__, lifespan=lifespan)
    app.state.services = services

    def verify_api_key(api_key: Optional[str] = Depends(API_KEY_HEADER)) -> bool:
        expected_key = services.config.api_key
        if expected_key and api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
        return True

    async def _auto_sync_interval(site_id: str) -> Optional[int]:
        try:
            site = (await services.engine.load_sync_config()).site(site_id)
        except ConfigError:
            return None
        return site.auto_sync_interval if site.auto_sync_enabled else None

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    # ── Online orders ─────────────────────────────────────────────────────

    @app.post("/online-orders/sync")
    async def trigger_sync(payload: SyncRequest, _: bool = Depends(verify_api_key)) -> Any:
        snapshot = await services.engine.start(payload.site_id)
        services.scheduler.notify_manual_run(payload.site_id, await _auto_sync_interval(payload.site_id))
        if snapshot.get("status") == RunState.ERROR.value:
            return JSONResponse(status_code=500, content=snapshot)
        return snapshot

    @app.get("/online-orders/status")
    async def online_status(_: bool = Depends(verify_api_key)) -> Dict[str, Any]:
        return services.engine.status()

    @app.get("/online-orders/scheduler/status")
    async def scheduler_status(_: bool = Depends(verify_api_key)) -> Dict[str, Any]:
        return services.scheduler.status()

    @app.get("/online-orders/logs")
    async def online_logs(
        site_id: str = Query(alias="siteId"),
        day: Optional[str] = Query(default=None, alias="date"),
        _: bool = Depends(verify_api_key),
    ) -> Dict[str, Any]:
        return {"logs": services.engine.read_logs(site_id, _parse_day(day))}

    @app.get("/online-orders/config")
    async def read_online_config(_: bool = Depends(verify_api_key)) -> Dict[str, Any]:
        return await services.engine.read_raw_config()

    @app.post("/online-orders/config")
    async def save_online_config(request: Request, _: bool = Depends(verify_api_key)) -> Dict[str, Any]:
        body = await request.json()
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Config body must be a JSON object")
        try:
            return await services.engine.save_config(body)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/online-orders/remote/screenshot")
    async def remote_screenshot(_: bool = Depends(verify_api_key)) -> Response:
        image = await services.engine.session.screenshot()
        if image is None:
            raise HTTPException(status_code=404, detail="No active browser page")
        return Response(content=image, media_type="image/jpeg", headers={"Cache-Control": "no-store"})

    @app.post("/online-orders/remote/interact")
    async def remote_interact(payload: InteractRequest, _: bool = Depends(verify_api_key)) -> Dict[str, Any]:
        try:
            handled = await services.engine.session.interact(payload.action, payload.params)
        except (KeyError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not handled:
            raise HTTPException(status_code=404, detail="No active browser page")
        return {"success": True}

    # ── Offline reconciliation ────────────────────────────────────────────

    @app.get("/offline-sync/config")
    async def read_offline_config(
        site_id: str = Query(alias="siteId"), _: bool = Depends(verify_api_key)
    ) -> Dict[str, Any]:
        return (await services.offline.get_config(site_id)).as_dict()

    @app.post("/offline-sync/config")
    async def save_offline_config(
        payload: OfflineConfigRequest,
        site_id: str = Query(alias="siteId"),
        _: bool = Depends(verify_api_key),
    ) -> Dict[str, Any]:
        saved = await services.offline.save_config(
            site_id, {"enabled": payload.enabled, "intervalMinutes": payload.interval_minutes}
        )
        return saved.as_dict()

    @app.get("/offline-sync/status")
    async def offline_status(
        site_id: str = Query(alias="siteId"),
        day: Optional[str] = Query(default=None, alias="date"),
        _: bool = Depends(verify_api_key),
    ) -> Dict[str, Any]:
        return services.offline.status_payload(site_id, _parse_day(day))

    @app.post("/offline-sync/sync")
    async def offline_sync(payload: OfflineSyncRequest, _: bool = Depends(verify_api_key)) -> Dict[str, Any]:
        status = await services.offline.trigger_manual_sync(payload.site_id)
        return status.as_dict()

    return app


def main() -> None:
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
