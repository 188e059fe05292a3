"""
FastAPI server for the IVR navigator.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /status: Snapshot of active call sessions
- POST /twiml: Generate TwiML for Twilio webhook (stream + dial the IVR)
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
from twilio.twiml.voice_response import VoiceResponse, Start, Dial
import uvicorn

from src.ivrbot.call_control import CallControl, TwilioCallControl
from src.ivrbot.config import Config, get_config, init_config, ConfigError
from src.ivrbot.flow import Flow, FlowError, load_flow
from src.ivrbot.media_stream import MediaStreamHandler
from src.ivrbot.registry import SessionRegistry
from src.ivrbot.session import CallSession
from src.ivrbot.stt import DeepgramBridge


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
    completed_flows: int = 0
    dtmf_sent: int = 0
    dtmf_failed: int = 0
    errors: int = 0

    def record_session(self, snapshot: Dict[str, Any]) -> None:
        self.dtmf_sent += snapshot.get("dtmf_sent", 0)
        self.dtmf_failed += snapshot.get("dtmf_failed", 0)
        if snapshot.get("outcome") == "succeeded":
            self.completed_flows += 1

    def to_dict(self, active_calls: int = 0) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": active_calls,
            "completed_flows": self.completed_flows,
            "dtmf_sent": self.dtmf_sent,
            "dtmf_failed": self.dtmf_failed,
            "errors": self.errors,
        }


def build_twiml(config: Config) -> str:
    """Fork the call audio to our WebSocket and dial the IVR."""
    response = VoiceResponse()
    start = Start()
    start.stream(url=config.ws_url, track=config.stream_track)
    response.append(start)

    dial = Dial(caller_id=config.caller_id) if config.caller_id else Dial()
    dial.number(config.ivr_number)
    response.append(dial)
    return str(response)


def create_app(
    *,
    registry: Optional[SessionRegistry] = None,
    call_control: Optional[CallControl] = None,
    flow: Optional[Flow] = None,
    bridge_factory=None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Components not passed in are built from configuration in the lifespan
    hook, so tests can inject fakes and skip external services entirely.
    """
    metrics = ServerMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting IVR navigator server...")

        try:
            config = init_config()
            configure_logging(config.log_level)

            if app.state.registry is None:
                ivr_flow = flow or load_flow(config.ivr_flow_path)
                control = call_control or TwilioCallControl.from_config(config)
                make_bridge = bridge_factory or (lambda call_sid: DeepgramBridge(call_sid, config))

                def session_factory(call_sid: str, stream_sid: str) -> CallSession:
                    return CallSession(
                        call_sid,
                        stream_sid,
                        ivr_flow,
                        make_bridge(call_sid),
                        control,
                        drain_timeout=config.session_drain_timeout_seconds,
                    )

                app.state.registry = SessionRegistry(session_factory)

            logger.info(
                "Server ready",
                port=config.port,
                public_host=config.public_host,
                ws_url=config.ws_url,
                ivr_number=config.ivr_number,
            )

        except (ConfigError, FlowError) as e:
            logger.error("Configuration error", error=str(e))
            sys.exit(1)
        except SystemExit:
            raise
        except Exception as e:
            logger.error("Startup failed", error=str(e))
            sys.exit(1)

        yield

        logger.info("Shutting down server...")
        if app.state.registry is not None:
            await app.state.registry.close_all()

    app = FastAPI(
        title="IVR Navigator",
        description="Drives a phone IVR with DTMF based on live transcription",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.metrics = metrics

    def active_calls() -> int:
        return len(app.state.registry) if app.state.registry is not None else 0

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            content={
                "status": "healthy",
                "timestamp": time.time(),
                "active_calls": active_calls(),
            }
        )

    @app.get("/metrics")
    async def get_metrics() -> JSONResponse:
        """Metrics endpoint."""
        return JSONResponse(content=metrics.to_dict(active_calls()))

    @app.get("/status")
    async def get_status() -> JSONResponse:
        """Read-only snapshot of active call sessions."""
        sessions = app.state.registry.snapshot() if app.state.registry is not None else []
        return JSONResponse(content={"active_calls": len(sessions), "sessions": sessions})

    @app.post("/twiml")
    @app.get("/twiml")
    @app.post("/incoming-call")
    @app.get("/incoming-call")
    async def generate_twiml(request: Request) -> Response:
        """
        Generate TwiML for Twilio webhook.

        Streams the call audio to our WebSocket while dialing the IVR.
        """
        config = get_config()
        twiml = build_twiml(config)

        logger.info("Generated TwiML", ws_url=config.ws_url, ivr_number=config.ivr_number)

        return Response(
            content=twiml,
            media_type="application/xml",
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """
        Twilio Media Streams WebSocket endpoint.

        Receives the call audio and routes it to the call's session.
        """
        await websocket.accept()

        metrics.total_connections += 1
        metrics.active_connections += 1

        registry: Optional[SessionRegistry] = app.state.registry
        if registry is None:
            logger.error("WebSocket rejected: server not initialized")
            metrics.active_connections -= 1
            await websocket.close(code=1011)
            return

        handler = MediaStreamHandler(registry)
        logger.info("WebSocket connected", active_connections=metrics.active_connections)

        try:
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info("WebSocket disconnected", call_sid=handler.call_sid or None)
                    break

                had_session = handler.session is not None
                try:
                    await handler.handle_message(message)
                except Exception as e:
                    logger.error(
                        "Error handling WebSocket message",
                        call_sid=handler.call_sid or None,
                        error=str(e),
                    )
                    metrics.errors += 1
                    # Continue processing - don't crash on single message error
                    continue
                if not had_session and handler.session is not None:
                    metrics.total_calls += 1

        except Exception as e:
            logger.error(
                "WebSocket handler error",
                call_sid=handler.call_sid or None,
                error=str(e),
            )
            metrics.errors += 1

        finally:
            try:
                await handler.close()
            except Exception as e:
                logger.error("Error closing call session", call_sid=handler.call_sid or None, error=str(e))
            finally:
                # A `stop` event has usually closed the session already.
                if handler.last_session is not None:
                    metrics.record_session(handler.last_session.snapshot())

                metrics.active_connections -= 1
                logger.info("WebSocket closed", call_sid=handler.call_sid or None, active_calls=active_calls())

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

    return app


app = create_app()


def main() -> None:
    """Run the server."""
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
