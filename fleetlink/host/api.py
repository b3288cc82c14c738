"""HTTP API for the dashboard host.

The dashboard UI talks to the host service only through these endpoints:

  GET  /fleet/status         listening port, discovered host, device counts
  GET  /fleet/roster         every known device with liveness
  POST /fleet/send           send one command to an explicit host:port
  POST /fleet/send-batch     send one command to selected roster devices
  POST /fleet/listen-port    rebind the dashboard UDP port
  POST /fleet/announce       broadcast an unsolicited HostAnnouncement

Start with::

    python -m fleetlink.host
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from fleetlink import __version__
from fleetlink.errors import BindFailure, SendFailure
from fleetlink.host.service import HostService, SendRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fleet", tags=["fleet"])


def get_service(request: Request) -> HostService:
    return request.app.state.host_service


# ── Request models ────────────────────────────────────────────────


class CommandFields(BaseModel):
    action: str
    payload: str = ""
    include_cmd_id: bool = True
    cmd_id: str | None = None
    timestamp: int | None = None
    force_payload_field: bool = False
    shared_secret: str | None = None

    def to_send_request(self) -> SendRequest:
        return SendRequest(
            action=self.action,
            payload=self.payload,
            include_cmd_id=self.include_cmd_id,
            cmd_id=self.cmd_id,
            timestamp=self.timestamp,
            force_payload_field=self.force_payload_field,
            shared_secret=self.shared_secret,
        )


class SendCommandRequest(CommandFields):
    host: str
    port: int


class BatchSendRequest(CommandFields):
    devices: list[str] = Field(default_factory=list)


class ListenPortRequest(BaseModel):
    port: int


class AnnounceRequest(BaseModel):
    port: int | None = None
    address: str = "255.255.255.255"


# ── Endpoints ─────────────────────────────────────────────────────


@router.get("/status")
async def status(service: HostService = Depends(get_service)):
    return service.status()


@router.get("/roster")
async def roster(service: HostService = Depends(get_service)):
    views = service.roster.snapshot()
    online = sum(1 for v in views if v.online)
    return {
        "devices": [v.to_dict() for v in views],
        "online": online,
        "offline": len(views) - online,
    }


@router.post("/send")
async def send(req: SendCommandRequest, service: HostService = Depends(get_service)):
    try:
        result = service.send_command(req.to_send_request(), req.host, req.port)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SendFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"sent_bytes": result.sent_bytes, "message": result.envelope.to_dict()}


@router.post("/send-batch")
async def send_batch(req: BatchSendRequest, service: HostService = Depends(get_service)):
    if not req.devices:
        raise HTTPException(status_code=400, detail="No devices selected")
    try:
        result = service.send_to_devices(req.devices, req.to_send_request())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success_count": result.success_count, "failures": result.failures}


@router.post("/listen-port")
async def listen_port(req: ListenPortRequest, service: HostService = Depends(get_service)):
    try:
        address = service.set_listen_port(req.port)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BindFailure as e:
        raise HTTPException(status_code=409, detail=str(e))
    host, port = address if address else ("", req.port)
    return {"address": host, "port": port}


@router.post("/announce")
async def announce(req: AnnounceRequest, service: HostService = Depends(get_service)):
    try:
        result = service.announce(port=req.port, address=req.address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SendFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"sent_bytes": result.sent_bytes, "message": result.envelope.to_dict()}


# ── App factory ───────────────────────────────────────────────────


def create_app(service: HostService) -> FastAPI:
    """Build the dashboard API around *service*.

    The app's lifespan binds the UDP port and runs the dispatch loop; a
    ``BindFailure`` aborts startup.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service.start()
        task = asyncio.create_task(service.run_dispatch_loop())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            service.stop()

    app = FastAPI(title="fleetlink host", version=__version__, lifespan=lifespan)
    app.state.host_service = service
    app.include_router(router)
    return app
