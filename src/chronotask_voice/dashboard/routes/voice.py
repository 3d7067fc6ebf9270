"""Voice assistant control and activity endpoints."""

from fastapi import APIRouter, HTTPException, Request

router = APIRouter()


def _controller(request: Request):
    controller = request.app.state.controller
    if controller is None:
        raise HTTPException(status_code=503, detail="Voice controller not available")
    return controller


@router.get("/status")
async def voice_status(request: Request):
    """Current mode and session state."""
    return _controller(request).status()


@router.post("/start")
async def start_voice(request: Request):
    """Turn voice on (OFF -> WAITING).

    ``started`` is false when voice was already on, another transition was
    in flight, or recognition could not start.
    """
    controller = _controller(request)
    started = await controller.start()
    return {"started": started, "mode": controller.mode.value}


@router.post("/stop")
async def stop_voice(request: Request):
    """Turn voice off from any mode."""
    controller = _controller(request)
    await controller.stop()
    return {"mode": controller.mode.value}


@router.get("/activity")
async def voice_activity(request: Request, limit: int = 100, offset: int = 0, role: str | None = None):
    """Recent transcripts, tool calls and session events, newest first."""
    activity_log = request.app.state.activity_log
    roles = [role] if role else None
    entries = activity_log.get_entries(limit=limit, offset=offset, roles=roles)
    return {"entries": [e.to_dict() for e in entries], "total": len(activity_log.entries)}
