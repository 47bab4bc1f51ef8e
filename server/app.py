"""
FastAPI server for the call relay.

Endpoints:
- POST /voice: Twilio voice webhook, answers TwiML that opens a media stream
- WS /streams: Twilio Media Streams WebSocket
- GET / and /health: Health check
- GET /streams-status: WebSocket endpoint description
- GET /metrics: JSON metrics
"""

import asyncio
import sys

# Use uvloop for faster asyncio where available (not on Windows)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.callrelay.config import ConfigError, get_config, init_config


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
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": len(active_calls),
            "errors": self.errors,
        }


metrics = ServerMetrics()

# call_id -> CallSession
active_calls: Dict[str, Any] = {}


async def close_active_calls(reason: str = "shutdown") -> None:
    calls = list(active_calls.values())
    if not calls:
        return
    logger.info("Closing active calls", count=len(calls))
    results = await asyncio.gather(*(call.close(reason=reason) for call in calls), return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error("Error closing call", error=str(result))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call relay server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Best effort: a rejected key only degrades synthesis.
        from src.callrelay.tts import ElevenLabsTTS
        await ElevenLabsTTS(config).validate_api_key()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host or "(from request)",
            stream_path=config.stream_path,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await close_active_calls()


app = FastAPI(
    title="Call Relay",
    description="Relays phone call audio through transcription, generation and synthesis",
    version="1.0.0",
    lifespan=lifespan,
)


def _health_payload() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": "call relay",
        "timestamp": time.time(),
        "active_calls": len(active_calls),
    }


@app.get("/")
async def root() -> JSONResponse:
    return JSONResponse(content=_health_payload())


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content=_health_payload())


@app.get("/streams-status")
async def streams_status() -> JSONResponse:
    config = get_config()
    return JSONResponse(
        content={
            "endpoint": config.stream_path,
            "protocol": "websocket",
            "status": "ready",
            "active_calls": len(active_calls),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


def stream_url_for(request: Request) -> str:
    """
    WebSocket URL advertised to Twilio.

    PUBLIC_HOST wins and is always served over wss. Otherwise the request host
    is used, with wss only when the request arrived over https.
    """
    config = get_config()
    if config.public_host:
        return config.ws_url

    host = request.headers.get("host") or request.url.netloc
    proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "http").split(",")[0].strip()
    scheme = "wss" if proto == "https" else "ws"
    return f"{scheme}://{host}{config.stream_path}"


def build_twiml(stream_url: str) -> str:
    response = VoiceResponse()
    connect = Connect()
    connect.stream(url=stream_url)
    response.append(connect)
    return str(response)


@app.post("/voice")
async def voice_webhook(request: Request) -> Response:
    """
    Twilio voice webhook.

    Returns TwiML that connects the call audio to our WebSocket endpoint.
    """
    stream_url = stream_url_for(request)
    logger.info("Generated TwiML", ws_url=stream_url)
    return Response(content=build_twiml(stream_url), media_type="text/xml")


@app.websocket("/streams")
async def streams_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Frames are posted to the call session in arrival order; the session
    handles them on its own dispatch loop.
    """
    from src.callrelay.orchestrator import (
        CallSession,
        TransportClosed,
        TransportError,
        TransportMessage,
    )
    from src.callrelay.transport import WebSocketTransport

    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1

    call = CallSession(WebSocketTransport(websocket))
    call_id = call.session.call_id
    active_calls[call_id] = call
    call.start()

    logger.info("WebSocket connected", call_id=call_id, active_calls=len(active_calls))

    try:
        while True:
            # receive() rather than receive_text(): a stray binary frame must
            # reach the codec (and be dropped there), not end the call.
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            call.post(TransportMessage(raw))

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", call_id=call_id)
        call.post(TransportClosed())

    except asyncio.CancelledError:
        call.post(TransportClosed(reason="server_cancelled"))
        raise

    except Exception as e:
        logger.error("WebSocket handler error", call_id=call_id, error=str(e))
        metrics.errors += 1
        call.post(TransportError(e))

    finally:
        try:
            await call.wait_closed()
        finally:
            active_calls.pop(call_id, None)
            metrics.active_connections -= 1
            logger.info("Call ended", call_id=call_id, active_calls=len(active_calls))


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
