"""
FastAPI server for the clinic voice agent.

Endpoints:
- GET /: Service descriptor
- GET /health: Health check
- GET /status: Active calls and text conversations
- GET /metrics: JSON metrics
- POST /voice, /twiml: TwiML greeting + Media Stream for Twilio Voice
- POST /sms: Text booking over SMS (TwiML reply)
- POST /whatsapp: Text booking over WhatsApp (REST reply)
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import html
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.clinic_agent.config import get_config, init_config, ConfigError
from src.clinic_agent.errors import DuplicateSession
from src.clinic_agent.messaging import APOLOGY_REPLY
from src.clinic_agent.services import AgentServices, build_services


# Initialize structured logging
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

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


def get_services(app: FastAPI) -> AgentServices:
    """Shared collaborators; built on first use if startup did not run."""
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(get_config())
        app.state.services = services
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting clinic voice agent server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        services = build_services(config)
        app.state.services = services

        # Validate Groq model at startup
        await services.llm.validate_model()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            clinic_name=config.clinic_name,
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

    # Shutdown
    logger.info("Shutting down server...")
    for call_sid in services.registry.call_sids():
        session = services.registry.get_call(call_sid)
        if session:
            await session.close(reason="shutdown")
    await services.aclose()


# Create FastAPI app
app = FastAPI(
    title="Clinic Voice Agent",
    description="AI receptionist for clinic appointments over voice, SMS and WhatsApp",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def service_info() -> JSONResponse:
    """Service descriptor."""
    config = get_config()
    return JSONResponse(
        content={
            "status": "running",
            "service": "Clinic Voice Agent",
            "clinic": config.clinic_name,
            "features": {
                "voice": "enabled (realtime)",
                "sms": "enabled",
                "whatsapp": "enabled",
                "persistence": "enabled" if config.persistence_enabled else "disabled",
            },
            "endpoints": {
                "voice": "/voice",
                "whatsapp": "/whatsapp",
                "sms": "/sms",
                "status": "/status",
            },
        }
    )


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    services = get_services(request.app)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": services.registry.active_calls,
        }
    )


@app.get("/status")
async def status(request: Request) -> JSONResponse:
    """Active conversations and uptime."""
    services = get_services(request.app)
    return JSONResponse(
        content={
            "status": "healthy",
            "active_calls": services.registry.active_calls,
            "active_conversations": services.registry.text_conversations,
            "uptime": round(services.metrics.uptime_seconds, 2),
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=get_services(request.app).metrics.to_dict())


@app.post("/voice")
@app.get("/voice")
@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio Voice webhook.

    Greets the caller, then connects the call to our WebSocket endpoint.
    """
    config = get_config()
    greeting = html.escape(
        f"Hello! Thank you for calling {config.clinic_name}. How can I help you today?"
    )

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say voice="alice" language="en-US">{greeting}</Say>
    <Connect>
        <Stream url="{config.ws_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


def _messaging_twiml(body: str) -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Message>{html.escape(body)}</Message>
</Response>"""


@app.post("/sms")
async def sms_webhook(request: Request) -> Response:
    """Reply to an inbound SMS with TwiML."""
    services = get_services(request.app)
    form = await request.form()
    sender = str(form.get("From", ""))
    body = str(form.get("Body", ""))

    try:
        reply = await services.text_handler.handle(sender, body, channel="sms")
    except Exception as e:
        logger.error("SMS handler error", error=str(e))
        services.metrics.errors += 1
        reply = APOLOGY_REPLY

    return Response(content=_messaging_twiml(reply), media_type="application/xml")


@app.post("/whatsapp")
async def whatsapp_webhook(request: Request) -> Response:
    """Reply to an inbound WhatsApp message through the REST API."""
    services = get_services(request.app)
    form = await request.form()
    sender = str(form.get("From", ""))
    body = str(form.get("Body", ""))

    status_code = 200
    try:
        reply = await services.text_handler.handle(sender, body, channel="whatsapp")
    except Exception as e:
        logger.error("WhatsApp handler error", error=str(e))
        services.metrics.errors += 1
        reply = APOLOGY_REPLY
        status_code = 500

    try:
        await services.messenger.send_whatsapp(sender, reply)
    except Exception as e:
        services.metrics.record_failure("send", channel="whatsapp", error=str(e))
        status_code = 500

    return Response(status_code=status_code)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()
    services = get_services(websocket.app)
    metrics = services.metrics

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    logger.info("WebSocket connected", active_calls=metrics.active_calls)

    session = services.create_call_session(websocket.send_text)
    close_reason = "channel_closed"

    try:
        # Handle incoming messages until Twilio stops the stream
        while not session.closed:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_sid=session.call_sid)
                break

            try:
                await session.on_carrier_control_frame(message)
            except DuplicateSession as e:
                logger.warning("Duplicate call session rejected", call_sid=e.identifier)
                close_reason = "duplicate"
                metrics.errors += 1
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_sid=session.call_sid,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_sid=session.call_sid,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        # A stop frame has already closed the session; this is a no-op then.
        try:
            await session.close(reason=close_reason)
        except Exception as e:
            logger.error("Error closing call session", error=str(e))

        if close_reason == "duplicate":
            try:
                await websocket.close(code=1008)
            except Exception:
                logger.debug("WebSocket already closed")

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_sid=session.call_sid,
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
    get_services(request.app).metrics.errors += 1

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
