"""Dashboard FastAPI server for ChronoTask voice."""

from typing import TYPE_CHECKING

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from .activity_log import ActivityLog
from .routes.data import data_payload
from .websocket import ConnectionManager

if TYPE_CHECKING:
    from ..controller import Notice, VoiceSessionController
    from ..models import DataSnapshot, Mode
    from ..store import AppStore


def create_dashboard_app(
    store: "AppStore",
    controller: "VoiceSessionController | None" = None,
    activity_log: ActivityLog | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Args:
        store: AppStore shared with the voice controller
        controller: VoiceSessionController, or None to run without voice
        activity_log: ActivityLog the controller writes to

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="ChronoTask Dashboard",
        description="Projects, calendar and voice assistant control for ChronoTask",
        version="0.1.0",
    )

    # CORS for development (Vite dev server)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://localhost:8080",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:8080",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.controller = controller
    app.state.activity_log = activity_log or ActivityLog()
    app.state.ws_manager = ConnectionManager()
    ws_manager: ConnectionManager = app.state.ws_manager

    # Push every change to connected clients
    async def broadcast_data(snapshot: "DataSnapshot"):
        await ws_manager.broadcast_data(data_payload(snapshot))

    async def broadcast_activity(entry):
        await ws_manager.broadcast_activity(entry.to_dict())

    store.add_listener(broadcast_data)
    app.state.activity_log.add_listener(broadcast_activity)

    if controller is not None:
        async def broadcast_mode(mode: "Mode"):
            await ws_manager.broadcast_mode(mode.value)

        async def broadcast_notice(notice: "Notice"):
            await ws_manager.broadcast_notice(notice.level, notice.message)

        controller.add_mode_listener(broadcast_mode)
        controller.add_notice_listener(broadcast_notice)

    from .routes import data, voice

    app.include_router(data.router, prefix="/api", tags=["data"])
    app.include_router(voice.router, prefix="/api/voice", tags=["voice"])

    @app.websocket("/ws/events")
    async def websocket_endpoint(websocket: WebSocket):
        """Real-time event stream: mode_changed, notice, data_changed, activity."""
        await ws_manager.connect(websocket)
        mode = controller.mode.value if controller is not None else "off"
        await ws_manager.send_to_one(websocket, "mode_changed", {"mode": mode})
        try:
            while True:
                # Keep the connection open; clients do not send anything meaningful
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    @app.get("/health")
    async def health():
        """Quick health check."""
        return {
            "status": "ok",
            "service": "chronotask-voice",
            "voice_mode": controller.mode.value if controller is not None else None,
            "websocket_clients": ws_manager.connection_count,
        }

    @app.get("/", response_class=HTMLResponse)
    async def root():
        """API overview."""
        return """
        <!DOCTYPE html>
        <html>
        <head><title>ChronoTask Dashboard</title></head>
        <body>
            <h1>ChronoTask Dashboard API</h1>
            <ul>
                <li><a href="/api/data">/api/data</a> - Projects and calendar</li>
                <li><a href="/api/calendar">/api/calendar</a> - Scheduled tasks by date</li>
                <li><a href="/api/voice/status">/api/voice/status</a> - Voice assistant mode</li>
                <li><a href="/api/voice/activity">/api/voice/activity</a> - Voice activity log</li>
                <li><a href="/docs">/docs</a> - OpenAPI documentation</li>
            </ul>
            <p>WebSocket: <code>ws://localhost:8080/ws/events</code></p>
        </body>
        </html>
        """

    return app
