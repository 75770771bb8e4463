from __future__ import annotations
import asyncio, logging, time
from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from hrcompanion.config import load_config
from hrcompanion.errors import InvalidDeviceAddress
from hrcompanion.models.association import AssociationInfo
from hrcompanion.peripheral import validate_address
from hrcompanion.presence import dispatch_appeared, dispatch_disappeared
from hrcompanion.service import CompanionService

logger = logging.getLogger(__name__)

app = FastAPI(title="hrcompanion API", version="0.1.0")

_service: Optional[CompanionService] = None
_task: Optional[asyncio.Task] = None


def configure(service: Optional[CompanionService]) -> None:
    """Install the service the endpoints operate on (``None`` resets)."""
    global _service, _task
    _service = service
    _task = None


def _get_service() -> CompanionService:
    global _service
    if _service is None:
        _service = CompanionService.from_config(load_config().with_overrides(console_notifications=False))
    return _service


def _association_for(service: CompanionService, address: str) -> AssociationInfo:
    try:
        normalized = validate_address(address)
    except InvalidDeviceAddress as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    info = service.store.get_by_address(normalized)
    if info is None:
        raise HTTPException(status_code=404, detail=f"{normalized} is not associated")
    return info


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.get("/associations")
async def list_associations():
    return [info.to_dict() for info in _get_service().store.all()]


@app.post("/associations")
async def add_association(
    address: str = Query(..., description="MAC/UUID of the sensor"),
    name: Optional[str] = Query(None, description="Display name"),
):
    try:
        info = _get_service().store.associate(address, display_name=name)
    except InvalidDeviceAddress as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return info.to_dict()


@app.delete("/associations/{association_id}")
async def remove_association(association_id: int):
    if not _get_service().store.disassociate(association_id):
        raise HTTPException(status_code=404, detail=f"association {association_id} not found")
    return {"status": "removed", "id": association_id}


@app.get("/notifications")
async def notifications():
    records = _get_service().tray.active()
    return [
        {"key": record.key, "channel": record.channel_id, "title": record.title, "body": record.body}
        for record in records.values()
    ]


@app.post("/presence/appeared")
async def presence_appeared(address: str = Query(..., description="Associated device address")):
    service = _get_service()
    dispatch_appeared(service.observer, service.platform, _association_for(service, address))
    return {"status": "dispatched", "event": "appeared"}


@app.post("/presence/disappeared")
async def presence_disappeared(address: str = Query(..., description="Associated device address")):
    service = _get_service()
    dispatch_disappeared(service.observer, service.platform, _association_for(service, address))
    return {"status": "dispatched", "event": "disappeared"}


@app.post("/monitor/start")
async def monitor_start(runtime: Optional[float] = Query(None, ge=0.1, description="Optional monitor duration")):
    global _task
    service = _get_service()
    if _task and not _task.done():
        return {"status": "already-running"}
    _task = asyncio.create_task(service.run(runtime=runtime))
    return {"status": "started", "associations": len(service.store.all()), "runtime": runtime}


@app.post("/monitor/stop")
async def monitor_stop():
    global _task
    if _task is None:
        return {"status": "idle"}
    _get_service().request_stop()
    try:
        await asyncio.wait_for(_task, timeout=5.0)
    except asyncio.TimeoutError:
        _task.cancel()
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("monitor stop encountered error")
    _task = None
    return {"status": "stopped"}


@app.get("/monitor/status")
async def monitor_status():
    if _task is None or _task.done():
        return {"status": "idle"}
    return {"status": "running", "present": _get_service().presence.present}
