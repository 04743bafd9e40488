"""
Streamable HTTP endpoint for MCP.

    POST   /mcp   one JSON-RPC message per request
    GET    /mcp   server-to-client SSE stream of an existing session
    DELETE /mcp   terminate a session

The ``mcp-session-id`` header is minted by the server on ``initialize`` and
must accompany every later request. Authentication runs in
``AuthMiddleware`` before any of this, so an unauthenticated caller gets a
401 before its session id is even looked at.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from ..mcp.session_manager import Session, SessionManager
from ..schemas.jsonrpc import JsonRpcMessage
from ..utils.auth import ANONYMOUS, Principal
from ..utils.errors import (
    INVALID_REQUEST,
    InvalidRequestError,
    ParseError,
    SessionError,
    error_envelope,
    jsonrpc_error,
)

router = APIRouter()

logger = logging.getLogger("modelmcp.routes.mcp")

SESSION_HEADER = "mcp-session-id"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _principal(request: Request) -> Principal:
    return getattr(request.state, "principal", ANONYMOUS)


def _wants_event_stream(request: Request) -> bool:
    accept = [part.split(";")[0].strip() for part in request.headers.get("accept", "").split(",")]
    return "text/event-stream" in accept and "application/json" not in accept and "*/*" not in accept


def _session_for(request: Request) -> Session:
    session = _manager(request).get_session(request.headers.get(SESSION_HEADER))
    if session is None:
        raise SessionError()
    principal = _principal(request)
    if session.principal.user != principal.user:
        logger.warning(f"Session {session.id[:8]}... used by {principal.user}, owned by {session.principal.user}")
        raise SessionError()
    return session


def _error_response(request_id: Any, exc) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=error_envelope(request_id, exc))


def _reply(request: Request, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Response:
    if _wants_event_stream(request):
        async def single_event():
            yield f"event: message\ndata: {json.dumps(payload)}\n\n"

        return StreamingResponse(
            single_event(),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **(headers or {})},
        )
    return JSONResponse(content=payload, headers=headers)


@router.post("/mcp")
async def mcp_post(request: Request):
    try:
        body = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        return _error_response(None, ParseError("Parse error"))

    if isinstance(body, list):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonrpc_error(None, INVALID_REQUEST, "Invalid Request: batch requests are not supported"),
        )

    try:
        message = JsonRpcMessage.model_validate(body)
    except PydanticValidationError as exc:
        request_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(request_id, (str, int)) or isinstance(request_id, bool):
            request_id = None
        logger.info(f"Rejected malformed JSON-RPC message: {exc.error_count()} error(s)")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonrpc_error(request_id, INVALID_REQUEST, "Invalid Request"),
        )

    if message.is_response:
        # no server-initiated requests are outstanding
        return Response(status_code=status.HTTP_202_ACCEPTED)

    manager = _manager(request)
    session_id = request.headers.get(SESSION_HEADER)

    if message.method == "initialize":
        if session_id is not None:
            if manager.has_session(session_id):
                return _error_response(message.id, InvalidRequestError("Invalid Request: Server already initialized"))
            return _error_response(message.id, SessionError())
        if message.is_notification:
            return _error_response(None, InvalidRequestError("Invalid Request: initialize must carry an id"))

        session, response = await manager.create_session(message, _principal(request))
        if session is None:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=response)
        return _reply(request, response, headers={SESSION_HEADER: session.id})

    try:
        session = _session_for(request)
    except SessionError as exc:
        return _error_response(None if message.is_notification else message.id, exc)

    response = await session.handle(message)
    if response is None:
        return Response(status_code=status.HTTP_202_ACCEPTED)
    return _reply(request, response)


@router.get("/mcp")
async def mcp_stream(request: Request):
    try:
        session = _session_for(request)
    except SessionError as exc:
        return _error_response(None, exc)

    logger.info(f"SSE stream opened for session {session.id[:8]}...")
    return StreamingResponse(
        session.transport.stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.delete("/mcp")
async def mcp_terminate(request: Request):
    try:
        session = _session_for(request)
    except SessionError as exc:
        return _error_response(None, exc)

    closed = await _manager(request).terminate_session(session.id)
    if not closed:
        logger.warning(f"Session {session.id[:8]}... removed but did not close cleanly")
    return Response(status_code=status.HTTP_200_OK)
