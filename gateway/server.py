"""
HTTP and WebSocket front end for the RPC dispatcher.

    GET  /healthz  liveness, no auth
    POST /rpc      {"id", "method", "params"} -> {"id", "ok", "payload"|"error"}
    WS   /ws       {"type": "req", "id", "method", "params"}
                   -> {"type": "res", "id", "ok", "payload"|"error"}

When a gateway token is configured every call must carry it as
``Authorization: Bearer <token>`` (or ``?token=`` on the WebSocket). A paired
device may instead present its own role token together with an
``X-Oni-Device`` header naming the device.
"""

import hmac
import logging
import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from gateway.config import get_gateway_token
from gateway.devices import DEFAULT_ROLE
from gateway.errors import RpcError

logger = logging.getLogger(__name__)

DEVICE_HEADER = "X-Oni-Device"


def _bearer(value: Optional[str]) -> Optional[str]:
    if value and value.startswith("Bearer "):
        return value[7:].strip() or None
    return None


def _authorized(dispatcher: Any, provided: Optional[str], device_id: Optional[str]) -> bool:
    token = get_gateway_token(dispatcher.cfg)
    if not token:
        return True
    if not provided:
        return False
    if hmac.compare_digest(token, provided):
        return True
    if device_id:
        return dispatcher.runner.device_store.verify_token(device_id, DEFAULT_ROLE, provided)
    return False


def _error_frame(code: str, message: str) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message}}


def create_app(dispatcher: Any) -> FastAPI:
    app = FastAPI(title="Oni Gateway", docs_url=None, redoc_url=None)
    app.state.dispatcher = dispatcher

    async def require_token(request: Request) -> None:
        provided = _bearer(request.headers.get("Authorization"))
        if not _authorized(dispatcher, provided, request.headers.get(DEVICE_HEADER)):
            raise HTTPException(status_code=401, detail="Invalid or missing gateway token")

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {"ok": True, "running": dispatcher.runner.running, "ts": int(time.time() * 1000)}

    @app.post("/rpc", dependencies=[Depends(require_token)])
    async def rpc(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"id": None, **_error_frame(RpcError.INVALID_REQUEST, "body must be JSON")},
                                status_code=400)
        if not isinstance(body, dict) or not isinstance(body.get("method"), str):
            return JSONResponse(
                {"id": body.get("id") if isinstance(body, dict) else None,
                 **_error_frame(RpcError.INVALID_REQUEST, "method is required")},
                status_code=400,
            )
        result = await dispatcher.call(body["method"], body.get("params"))
        return JSONResponse({"id": body.get("id"), **result})

    @app.websocket("/ws")
    async def ws(websocket: WebSocket) -> None:
        provided = _bearer(websocket.headers.get("Authorization")) or websocket.query_params.get("token")
        device_id = websocket.headers.get(DEVICE_HEADER) or websocket.query_params.get("device")
        await websocket.accept()
        if not _authorized(dispatcher, provided, device_id):
            await websocket.send_json({"type": "res", "id": None,
                                       **_error_frame(RpcError.UNAUTHORIZED, "Invalid or missing gateway token")})
            await websocket.close(code=4401)
            return

        client = websocket.client.host if websocket.client else "?"
        logger.info("WebSocket client connected from %s", client)
        try:
            while True:
                try:
                    frame = await websocket.receive_json()
                except ValueError:
                    await websocket.send_json({"type": "res", "id": None,
                                               **_error_frame(RpcError.INVALID_REQUEST, "frame must be JSON")})
                    continue
                if not isinstance(frame, dict) or frame.get("type") != "req" or not isinstance(frame.get("method"), str):
                    frame_id = frame.get("id") if isinstance(frame, dict) else None
                    await websocket.send_json({"type": "res", "id": frame_id,
                                               **_error_frame(RpcError.INVALID_REQUEST, "expected a req frame")})
                    continue
                result = await dispatcher.call(frame["method"], frame.get("params"))
                await websocket.send_json({"type": "res", "id": frame.get("id"), **result})
        except WebSocketDisconnect:
            logger.info("WebSocket client %s disconnected", client)

    return app
