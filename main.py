import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, Path, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from config import CORS_ORIGINS, DEBUG, ENVIRONMENT, LOG_LEVEL
from database import get_db, init_db
from errors import ChatError, InternalError, NotFoundError
from message_service import MessageService, get_message_service
from realtime import ERROR, ChatGateway, Connection, ConnectionManager
from schemas import ErrorResponse, MessageCreate, MessageEnvelope, MessageListEnvelope

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mini Chat API",
    description="Real-time chat service with REST, WebSocket broadcast and a relational message store",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.state.gateway = ChatGateway(ConnectionManager())


def get_gateway(connection: HTTPConnection) -> ChatGateway:
    return connection.app.state.gateway


def error_body(status: str, status_code: int, message: str, **extra) -> dict:
    body = {"status": status, "statusCode": status_code, "message": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    detail = None
    if isinstance(exc, InternalError):
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}")
        if DEBUG and exc.cause is not None:
            detail = repr(exc.cause)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status, exc.status_code, exc.message,
                           code=exc.code, errors=exc.details, detail=detail),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body("fail", 400, "Validation failed", code="VALIDATION_ERROR", errors=errors),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=error_body("error", 500, "Internal Server Error",
                           code="INTERNAL_ERROR", detail=repr(exc) if DEBUG else None),
    )


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info(f"Application started ({ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")


@app.get("/", tags=["Info"])
async def root():
    return {
        "message": "Mini Chat Backend API",
        "version": "1.0.0",
        "endpoints": {
            "messages": "/api/chat/messages",
            "websocket": "/ws",
            "health": "/health",
            "docs": "/docs"
        }
    }


@app.post("/api/chat/messages", status_code=201, response_model=MessageEnvelope,
          responses={400: {"model": ErrorResponse}}, tags=["Chat Messages"])
async def create_message(
    payload: MessageCreate,
    service: MessageService = Depends(get_message_service),
    gateway: ChatGateway = Depends(get_gateway),
):
    new_message = service.create_message(payload.username, payload.message)

    if not gateway.broadcast(new_message):
        logger.warning(f"Failed to broadcast message {new_message.id}")

    return {"status": "success", "data": {"message": new_message.to_dict()}}


@app.get("/api/chat/messages", response_model=MessageListEnvelope, tags=["Chat Messages"])
async def get_messages(
    limit: Optional[int] = 50,
    offset: Optional[int] = 0,
    service: MessageService = Depends(get_message_service),
):
    messages = service.list_messages(limit=limit, offset=offset)
    return {
        "status": "success",
        "results": len(messages),
        "data": {"messages": [m.to_dict() for m in messages]}
    }


@app.get("/api/chat/messages/{message_id}", response_model=MessageEnvelope,
         responses={404: {"model": ErrorResponse}}, tags=["Chat Messages"])
async def get_message(
    message_id: int = Path(..., ge=1),
    service: MessageService = Depends(get_message_service),
):
    message = service.get_message(message_id)
    return {"status": "success", "data": {"message": message.to_dict()}}


@app.delete("/api/chat/messages/{message_id}", status_code=204, response_class=Response,
            responses={404: {"model": ErrorResponse}}, tags=["Chat Messages"])
async def delete_message(
    message_id: int = Path(..., ge=1),
    service: MessageService = Depends(get_message_service),
):
    if not service.delete_message(message_id):
        raise NotFoundError("Message not found")
    return Response(status_code=204)


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    service: MessageService = Depends(get_message_service),
    gateway: ChatGateway = Depends(get_gateway),
):
    await websocket.accept()
    connection = Connection(websocket)
    await gateway.on_connect(connection, service)

    reason = None
    try:
        while True:
            data = await websocket.receive_text()
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                connection.send(ERROR, {"message": "Invalid JSON"})
                continue
            await gateway.handle_event(connection, event, service)

    except WebSocketDisconnect as e:
        reason = e.code
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.id}: {e}")
        reason = str(e)
    finally:
        await gateway.on_disconnect(connection, reason)


@app.get("/health", tags=["Health"])
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "OK"
    except Exception as e:
        db_status = f"ERROR: {e}" if DEBUG else "ERROR"

    return {
        "status": "OK" if db_status == "OK" else "ERROR",
        "database": db_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
