"""
FastAPI application exposing site occupancy.

Endpoints
---------
- GET  /health                -> Simple liveness check
- GET  /snmp/poll             -> Poll one switch now (ad hoc)
- POST /snmp/poll-batch       -> Poll several switches concurrently
- POST /snmp/clear-cache      -> Forget all counter baselines
- GET  /snmp/cache-info       -> Counter cache contents
- GET  /config/sites          -> Sites file as read from disk
- POST /polling/start         -> (Re)start polling (body or sites file)
- POST /polling/stop          -> Stop all site timers
- POST /sites/{site_id}/poll  -> Run one cycle for an active site now
- GET  /sessions/{site_id}    -> Confirmed and pending presence sessions
- GET  /history/{site_id}     -> Recent occupancy samples
- GET  /summary               -> Counts for every tracked site
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from occupancy.config import load_sites_config, settings
from occupancy.database import Base, SessionLocal, engine
from occupancy.errors import ConfigurationError
from occupancy.history import HistoryArchive, HistoryRecorder
from occupancy.poller import PollingService
from occupancy.records import SwitchPollResult
from occupancy.schemas import (
    BatchPollOut,
    CacheInfoOut,
    CycleOut,
    DeviceOut,
    HistoryOut,
    HistorySampleOut,
    PollingStatusOut,
    SessionOut,
    SessionsOut,
    SiteSummaryOut,
    StatusOut,
    SummaryOut,
    SwitchPollOut,
)
from occupancy.sessions import PresenceSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Service bootstrap
# ---------------------------------------------------------------------------


def build_service() -> PollingService:
    archive = None
    if settings.archive_history:
        # Make sure tables exist even on a fresh database.
        Base.metadata.create_all(bind=engine)
        archive = HistoryArchive(SessionLocal)
    return PollingService(history=HistoryRecorder(settings.history_capacity, archive))


def autostart(service: PollingService) -> None:
    """Start polling from the sites file, if there is one."""
    try:
        config = load_sites_config(settings.sites_config_path)
        if config["sites"]:
            service.start(config["sites"], config["globalSettings"])
            logger.info("Auto-started polling for configured sites")
    except ConfigurationError as exc:
        logger.error("Failed to auto-start polling: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_service()
    app.state.polling = service
    if settings.autostart_polling:
        autostart(service)
    yield
    await service.shutdown()


app = FastAPI(
    title="Site Occupancy API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


# ---------------------------------------------------------------------------
# Dependency: the process-wide polling service
# ---------------------------------------------------------------------------


def get_service(request: Request) -> PollingService:
    """FastAPI dependency that returns the PollingService built at startup."""
    return request.app.state.polling


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def switch_out(result: SwitchPollResult) -> SwitchPollOut:
    return SwitchPollOut(
        success=result.success,
        timestamp=result.timestamp,
        host=result.host,
        switch_id=result.switch_id,
        error=result.error,
        devices=[
            DeviceOut(
                if_index=d.if_index,
                if_descr=d.descr,
                mac_address=d.identity,
                traffic_rate_kbps=round(d.rate_kbps, 2),
                timestamp=d.timestamp,
                switch_id=result.switch_id,
                switch_name=result.switch_name,
            )
            for d in result.devices
        ],
    )


def session_out(s: PresenceSession) -> SessionOut:
    return SessionOut(
        mac=s.identity,
        switch_id=s.switch_id,
        switch_name=s.switch_name,
        if_descr=s.descr,
        first_seen=s.first_seen,
        last_seen=s.last_seen,
        last_active=s.last_active,
        last_reset=s.last_reset,
        consecutive_poll_count=s.consecutive_poll_count,
        confirmed=s.confirmed,
        current_traffic_kbps=round(s.current_traffic_kbps, 2),
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
def health() -> dict:
    """Simple liveness endpoint used for health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "service": "Site Occupancy Monitor",
    }


@app.get("/snmp/poll", response_model=SwitchPollOut)
async def poll_switch(
    host: Optional[str] = None,
    community: Optional[str] = None,
    stack_members: int = Query(1, alias="stackMembers", ge=1),
    excluded_vlans: Optional[str] = Query(None, alias="excludedVlans"),
    excluded_ports: Optional[str] = Query(None, alias="excludedPorts"),
    service: PollingService = Depends(get_service),
):
    """
    Poll a single switch with optional exclusions (comma-separated).

    Uses the service counter cache, so the first call for a switch only
    stores baselines and reports zero traffic.
    """
    if not host or not community:
        raise ConfigurationError("Missing required parameters: host, community")

    result = await service.poll_switch({
        "host": host,
        "community": community,
        "stack_members": stack_members,
        "excluded_vlans": excluded_vlans,
        "excluded_ports": excluded_ports,
    })
    return switch_out(result)


@app.post("/snmp/poll-batch", response_model=BatchPollOut)
async def poll_batch(
    payload: Dict[str, Any] = Body(...),
    service: PollingService = Depends(get_service),
):
    switches = payload.get("switches")
    if not isinstance(switches, list) or not switches:
        raise ConfigurationError("Missing required parameter: switches array")

    results = await service.poll_switches(switches)
    return BatchPollOut(timestamp=datetime.now(), results=[switch_out(r) for r in results])


@app.post("/snmp/clear-cache", response_model=StatusOut)
async def clear_cache(service: PollingService = Depends(get_service)):
    service.clear_counter_cache()
    return StatusOut(message="Counter cache cleared")


@app.get("/snmp/cache-info", response_model=CacheInfoOut)
async def cache_info(service: PollingService = Depends(get_service)):
    return CacheInfoOut(**service.inspect_counter_cache())


@app.get("/config/sites")
def get_sites_config():
    """Return the sites file (read-only; saving configuration is not our job)."""
    config = load_sites_config(settings.sites_config_path)
    body = {"success": True, "sites": config["sites"], "globalSettings": config["globalSettings"]}
    if not config["sites"]:
        body["message"] = f"No sites found in {settings.sites_config_path}."
    return body


@app.post("/polling/start", response_model=PollingStatusOut)
async def start_polling(
    payload: Optional[Dict[str, Any]] = Body(None),
    service: PollingService = Depends(get_service),
):
    """
    Start polling with the sites in the request body, or from the sites file
    when the body has none. Restarts every site timer.
    """
    payload = payload or {}
    if payload.get("sites"):
        sites, global_settings = payload["sites"], payload.get("globalSettings")
    else:
        config = load_sites_config(settings.sites_config_path)
        sites, global_settings = config["sites"], config["globalSettings"]

    if not sites:
        raise ConfigurationError("No sites configured")

    active = service.start(sites, global_settings)
    return PollingStatusOut(message="Polling started", sites=active)


@app.post("/polling/stop", response_model=PollingStatusOut)
async def stop_polling(service: PollingService = Depends(get_service)):
    service.stop()
    return PollingStatusOut(message="Polling stopped")


@app.post("/sites/{site_id}/poll", response_model=CycleOut)
async def poll_site_now(site_id: str, service: PollingService = Depends(get_service)):
    result = await service.run_site_cycle(site_id)
    return CycleOut.model_validate(result)


@app.get("/sessions/{site_id}", response_model=SessionsOut)
async def get_sessions(site_id: str, service: PollingService = Depends(get_service)):
    data = service.get_sessions(site_id)
    return SessionsOut(
        site_id=site_id,
        confirmed=[session_out(s) for s in data["confirmed"]],
        pending=[session_out(s) for s in data["pending"]],
        confirmed_count=data["confirmed_count"],
        pending_count=data["pending_count"],
        last_update=datetime.now(),
    )


@app.get("/history/{site_id}", response_model=HistoryOut)
async def get_history(
    site_id: str,
    limit: Optional[int] = Query(None, ge=1),
    service: PollingService = Depends(get_service),
):
    samples = service.get_history(site_id, limit)
    return HistoryOut(
        site_id=site_id,
        history=[HistorySampleOut.model_validate(s) for s in samples],
    )


@app.get("/summary", response_model=SummaryOut)
async def get_summary(service: PollingService = Depends(get_service)):
    return SummaryOut(
        summary=[SiteSummaryOut(**row) for row in service.summary()],
        last_update=datetime.now(),
    )
