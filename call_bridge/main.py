import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .asterisk_manager import AsteriskManager
from .config import Settings, load_settings
from .errors import BridgeError
from .events import EventPipeline
from .gateway import CommandGateway
from .relay import ClientConnection, EventRelay
from .tracker import CallTracker

logger = logging.getLogger(__name__)


class OriginateRequest(BaseModel):
    self_number: Optional[str] = Field(None, alias="selfNumber")
    customer_number: Optional[str] = Field(None, alias="customerNumber")


def create_app(settings: Optional[Settings] = None,
               manager_factory: Callable[[Settings, EventPipeline], Any] = AsteriskManager) -> FastAPI:
    """Build the bridge: one tracker shared by the AMI pipeline, relay and gateway."""
    settings = settings or load_settings()
    tracker = CallTracker()
    relay = EventRelay(tracker, max_queue=settings.client_queue_size)
    pipeline = EventPipeline(tracker, relay)
    manager = manager_factory(settings, pipeline)
    gateway = CommandGateway(tracker, manager, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Asterisk call bridge...")
        success = await manager.connect()
        if success:
            logger.info("Successfully connected to Asterisk AMI")
        else:
            logger.warning("Failed to connect to Asterisk AMI. Call control will fail until it connects.")

        yield

        logger.info("Shutting down Asterisk call bridge...")
        await relay.close()
        await manager.disconnect()

    app = FastAPI(
        title="Asterisk Call Bridge",
        description="Asterisk call control and live call state over WebSockets",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.tracker = tracker
    app.state.relay = relay
    app.state.pipeline = pipeline
    app.state.manager = manager
    app.state.gateway = gateway

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        return JSONResponse(status_code=exc.status_code,
                            content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    async def get_status() -> Dict:
        status = manager.get_status()
        status["active_calls"] = len(tracker)
        status["websocket_clients"] = relay.client_count
        return status

    @app.websocket("/ws/calls")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        client = await relay.connect(websocket)

        try:
            # Keep connection alive and handle incoming messages
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    relay.send_personal(client, {
                        "type": "error",
                        "message": "Invalid JSON format"
                    })
                    continue
                await handle_websocket_message(client, message)

        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            await relay.disconnect(client)

    CALL_COMMANDS = {
        "hold_call": gateway.hold,
        "resume_call": gateway.resume,
        "hangup_call": gateway.hangup,
        "start_recording": gateway.start_recording,
        "stop_recording": gateway.stop_recording,
    }

    async def handle_websocket_message(client: ClientConnection, message: Dict):
        """Handle incoming WebSocket messages"""
        message_type = message.get("type") if isinstance(message, dict) else None
        reply: Dict[str, Any]

        try:
            if message_type == "originate_call":
                call_id = await gateway.originate(message.get("self_number"),
                                                  message.get("customer_number"))
                reply = {"success": True, "call_id": call_id}

            elif message_type in CALL_COMMANDS:
                call_id = message.get("call_id")
                if not call_id:
                    relay.send_personal(client, {"type": "error", "message": "Missing call_id"})
                    return
                result = await CALL_COMMANDS[message_type](call_id)
                reply = {"success": True, "call_id": call_id}
                if isinstance(result, str):
                    reply["filename"] = result

            elif message_type == "get_status":
                relay.send_personal(client, {"type": "status", "data": await get_status()})
                return

            elif message_type == "get_active_calls":
                relay.send_personal(client, {"type": "active-calls",
                                             "calls": await tracker.snapshot()})
                return

            else:
                relay.send_personal(client, {
                    "type": "error",
                    "message": f"Unknown message type: {message_type}"
                })
                return

        except BridgeError as e:
            reply = {"success": False, "error": e.message}
        except Exception as e:
            logger.error(f"Error handling WebSocket message {message_type}: {e}")
            reply = {"success": False, "error": "Internal error"}

        reply["type"] = f"{message_type}_response"
        relay.send_personal(client, reply)

    # REST API endpoints
    @app.get("/api/health")
    async def health():
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/status")
    async def status():
        """Get Asterisk manager status"""
        return await get_status()

    @app.get("/api/calls")
    async def list_calls():
        """Get list of active calls"""
        return await tracker.snapshot()

    @app.post("/api/call/originate")
    async def originate_call(body: OriginateRequest):
        call_id = await gateway.originate(body.self_number, body.customer_number)
        return {
            "success": True,
            "callId": call_id,
            "message": f"Call initiated from {body.self_number} to {body.customer_number}",
        }

    @app.post("/api/call/{call_id}/hold")
    async def hold_call(call_id: str):
        await gateway.hold(call_id)
        return {"success": True, "message": "Call put on hold"}

    @app.post("/api/call/{call_id}/unhold")
    async def unhold_call(call_id: str):
        await gateway.resume(call_id)
        return {"success": True, "message": "Call resumed"}

    @app.post("/api/call/{call_id}/hangup")
    async def hangup_call(call_id: str):
        await gateway.hangup(call_id)
        return {"success": True, "message": "Call ended"}

    @app.post("/api/call/{call_id}/record")
    async def record_call(call_id: str):
        filename = await gateway.start_recording(call_id)
        return {"success": True, "message": "Recording started", "filename": filename}

    @app.post("/api/call/{call_id}/record/stop")
    async def stop_recording(call_id: str):
        await gateway.stop_recording(call_id)
        return {"success": True, "message": "Recording stopped"}

    @app.post("/api/events/ari")
    async def ari_event(payload: Dict[str, Any]):
        """Accept an ARI event forwarded by an external ARI consumer."""
        await pipeline.ingest_ari(payload)
        return {"success": True}

    return app
