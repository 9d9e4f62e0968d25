"""
FastAPI server for the voice call engine.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: TwiML for the Twilio voice webhook (issues a stream token)
- WS /ws/audio: Twilio Media Streams WebSocket
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl
from xml.sax.saxutils import quoteattr

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from twilio.request_validator import RequestValidator

from src.voicecore.config import ConfigError, get_config, init_config


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
    active_calls: int = 0
    rejected_streams: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "rejected_streams": self.rejected_streams,
            "errors": self.errors,
        }


metrics = ServerMetrics()


def get_services(app: FastAPI):
    """Shared per-process services, created on first use if startup didn't."""
    services = getattr(app.state, "services", None)
    if services is None:
        from src.voicecore.pipeline import PipelineServices

        services = PipelineServices.from_config(get_config())
        app.state.services = services
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice call server...")
    sweeper: Optional[asyncio.Task] = None

    try:
        config = init_config()
        configure_logging(config.log_level)

        services = get_services(app)
        await services.llm.validate_model()

        sweeper = asyncio.create_task(
            services.token_store.run_sweeper(config.stream_token_sweep_seconds)
        )

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
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
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    await get_services(app).aclose()


app = FastAPI(
    title="Voice Call Engine",
    description="AI receptionist for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


async def _webhook_params(request: Request) -> Dict[str, str]:
    if request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
        return dict(parse_qsl(body, keep_blank_values=True))
    return dict(request.query_params)


def _signature_valid(request: Request, params: Dict[str, str], config: Any) -> bool:
    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        return False
    url = f"{config.base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    validator = RequestValidator(config.twilio_auth_token)
    return validator.validate(url, params if request.method == "POST" else {}, signature)


def build_stream_twiml(ws_url: str, token: str) -> str:
    """TwiML connecting the call to our media stream, carrying the stream token."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(ws_url)}>
            <Parameter name="auth_token" value={quoteattr(token)} />
        </Stream>
    </Connect>
</Response>"""


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    Issues a single-use stream token bound to the dialled and calling numbers;
    the media stream must present it in its start event.
    """
    config = get_config()
    params = await _webhook_params(request)

    if config.twilio_validate_signature and not _signature_valid(request, params, config):
        logger.warning("Rejected webhook - invalid Twilio signature", path=request.url.path)
        return Response(content="Forbidden", status_code=403)

    services = get_services(request.app)
    token = services.token_store.issue(
        called_number=params.get("To") or None,
        caller_phone=params.get("From") or None,
    )

    logger.info(
        "Generated TwiML",
        ws_url=config.ws_url,
        call_sid=params.get("CallSid"),
        called_number=params.get("To"),
    )

    return Response(
        content=build_stream_twiml(config.ws_url, token),
        media_type="application/xml",
    )


@app.websocket("/ws/audio")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    connection_id = f"conn_{int(time.time() * 1000)}"
    logger.info("WebSocket connected", connection_id=connection_id, active_calls=metrics.active_calls)

    from src.voicecore.pipeline import create_pipeline

    pipeline = None
    closed = False

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        if closed:
            return
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", connection_id=connection_id, error=str(e))

    async def close_connection() -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await websocket.close()

    try:
        pipeline = await create_pipeline(
            send_message,
            get_services(websocket.app),
            close_connection=close_connection,
        )

        while not closed:
            try:
                message = await websocket.receive_text()
                await pipeline.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=connection_id)
                break
            except RuntimeError:
                # Receiving after we closed the socket ourselves.
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    connection_id=connection_id,
                    call_sid=pipeline.call_sid,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    except Exception as e:
        logger.error("WebSocket handler error", connection_id=connection_id, error=str(e))
        metrics.errors += 1

    finally:
        if pipeline:
            if pipeline.session is None and pipeline.is_stopped:
                metrics.rejected_streams += 1
            try:
                await pipeline.stop(reason="connection-closed")
            except Exception as e:
                logger.error("Error stopping pipeline", connection_id=connection_id, error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Connection closed",
            connection_id=connection_id,
            call_sid=pipeline.call_sid if pipeline else "",
            active_calls=metrics.active_calls,
        )


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
    try:
        config = init_config()
    except ConfigError as e:
        configure_logging("INFO")
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

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
