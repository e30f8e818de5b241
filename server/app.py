"""
FastAPI server for the Helpline voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml: Answer TwiML (hold greeting + media stream)
- POST /make-call: Place an outbound call about an issue
- POST /call-status: Twilio call status callback
- GET /audio/{name}: Synthesized replies fetched by Twilio <Play>
- WS /media-stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from src.helpline.artifacts import LocalArtifactStore
from src.helpline.config import ConfigError, get_config, init_config
from src.helpline.errors import TelephonyError
from src.helpline.telephony import is_terminal_status
from src.helpline.twilio_protocol import TwilioEventType, parse_twilio_message
from src.helpline.twiml import build_answer_twiml

DEFAULT_ISSUE = "Preciso de ajuda com um problema"


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide counters."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_streams: int = 0
    calls_placed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_streams": self.total_streams,
            "calls_placed": self.calls_placed,
            "errors": self.errors,
        }


metrics = ServerMetrics()


class MakeCallRequest(BaseModel):
    to: str
    issue: Optional[str] = None


class WebSocketTransport:
    """The media transport a session sees: an open/closed view of the socket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Helpline voice agent server...")
    orchestrator = None

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.helpline.llm import initialize_llm
        from src.helpline.orchestrator import create_orchestrator

        agent = await initialize_llm(config)
        orchestrator = create_orchestrator(config, agent=agent)
        await orchestrator.start()
        app.state.orchestrator = orchestrator

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            stream_url=config.stream_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await orchestrator.shutdown()


app = FastAPI(
    title="Helpline Voice Agent",
    description="Outbound helpline calls with speech recognition and generated replies",
    version="1.0.0",
    lifespan=lifespan,
)


def _orchestrator(scope: Any):
    return scope.app.state.orchestrator


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    orchestrator = _orchestrator(request)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": len(orchestrator.registry),
            "pending_calls": orchestrator.registry.pending_count,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Server counters plus per-call session and delivery stats."""
    return JSONResponse(content={**metrics.to_dict(), **_orchestrator(request).stats()})


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Answer TwiML for placed calls.

    Starts the inbound media stream, plays the hold greeting and keeps the
    call open with a long pause until replies replace the document.
    """
    config = get_config()
    twiml = build_answer_twiml(
        config.stream_url,
        greeting=config.hold_greeting,
        language=config.language,
        voice=config.twilio_voice,
    )
    logger.info("Generated TwiML", stream_url=config.stream_url)
    return Response(content=twiml, media_type="application/xml")


@app.post("/make-call")
async def make_call(request: Request, body: MakeCallRequest) -> JSONResponse:
    """Place an outbound call; the issue becomes the conversation's context."""
    to = body.to.strip()
    if not to:
        return JSONResponse(status_code=400, content={"error": "Phone number is required"})

    issue = (body.issue or "").strip() or DEFAULT_ISSUE
    config = get_config()

    try:
        call_sid = await _orchestrator(request).place_call(
            to,
            {"issue": issue},
            answer_url=f"{config.base_url}/twiml",
            status_callback=f"{config.base_url}/call-status",
        )
    except TelephonyError as e:
        metrics.errors += 1
        logger.error("Failed to place call", to=to, status=e.status, code=e.code, error=str(e))
        return JSONResponse(status_code=502, content={"error": str(e)})

    metrics.calls_placed += 1
    logger.info("Call placed", call_sid=call_sid, to=to, issue=issue[:100])
    return JSONResponse(content={"message": "Call started", "sid": call_sid, "issue": issue})


@app.post("/call-status")
async def call_status(request: Request) -> PlainTextResponse:
    """Twilio status callback; terminal statuses release the call immediately."""
    form = await request.form()
    call_sid = str(form.get("CallSid", ""))
    status = str(form.get("CallStatus", ""))
    logger.info("Call status", call_sid=call_sid, status=status)

    if call_sid and is_terminal_status(status):
        await _orchestrator(request).on_call_terminated(call_sid, status)

    return PlainTextResponse("OK")


@app.get("/audio/{name}")
async def get_audio(name: str) -> Response:
    """Serve a synthesized reply for Twilio <Play>."""
    path = LocalArtifactStore(config=get_config()).resolve(name)
    if path is None:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return FileResponse(path, media_type="audio/wav")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Inbound audio only; replies reach the caller through call updates.
    """
    await websocket.accept()
    orchestrator = _orchestrator(websocket)
    transport = WebSocketTransport(websocket)

    metrics.total_connections += 1
    metrics.active_connections += 1

    call_id: Optional[str] = None
    stopped = False

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break

            try:
                event_type, event = parse_twilio_message(message)

                if event_type == TwilioEventType.START:
                    if not event.call_sid:
                        logger.warning("Start event without callSid", stream_sid=event.stream_sid)
                        continue
                    call_id = event.call_sid
                    metrics.total_streams += 1
                    await orchestrator.on_call_started(call_id, transport, event.custom_parameters)

                elif event_type == TwilioEventType.MEDIA:
                    if call_id and event.payload:
                        await orchestrator.on_media_frame(call_id, event.payload)

                elif event_type == TwilioEventType.STOP:
                    logger.info("Media stream stop received", call_id=call_id or event.call_sid)
                    if call_id:
                        await orchestrator.on_call_stopped(call_id, transport)
                    stopped = True
                    break

            except ValueError as e:
                logger.warning("Ignoring malformed Twilio message", call_id=call_id, error=str(e))
                metrics.errors += 1
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                metrics.errors += 1

    finally:
        if call_id and not stopped:
            await orchestrator.on_call_stopped(call_id, transport)
        metrics.active_connections -= 1
        logger.info("Media stream closed", call_id=call_id, active_connections=metrics.active_connections)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
