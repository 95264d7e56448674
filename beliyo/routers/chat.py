import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from jose import JWTError
from pymongo.errors import PyMongoError

from beliyo.core.exceptions import AuthorizationError, ChatError, NotFoundError
from beliyo.core.logging import get_logger
from beliyo.utils.security import decode_access_token
from beliyo.utils.websocket_manager import ConnectionManager, SocketListener


logger = get_logger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])
manager = ConnectionManager()


async def _forward(websocket: WebSocket, listener: SocketListener) -> None:
    while True:
        frame = await listener.outbox.get()
        await websocket.send_text(frame)


@router.websocket("/ws/{conversation_id}")
async def chat_socket(websocket: WebSocket, conversation_id: str):
    # bearer token travels as ?token=... on the socket URL
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        user_id = decode_access_token(token).get("sub")
    except JWTError:
        await websocket.close(code=4401)
        return
    if not user_id:
        await websocket.close(code=4401)
        return

    ctx = websocket.app.state.context
    await manager.connect(user_id, conversation_id, websocket)
    listener = SocketListener()
    try:
        session = await ctx.sessions.open(conversation_id, user_id, listener)
    except AuthorizationError:
        manager.disconnect(user_id, websocket)
        await websocket.close(code=4403)
        return
    except NotFoundError:
        manager.disconnect(user_id, websocket)
        await websocket.close(code=4404)
        return
    except (ChatError, PyMongoError) as exc:
        logger.warning("chat_socket_open_failed", conversation_id=conversation_id, user_id=user_id, error=str(exc))
        manager.disconnect(user_id, websocket)
        await websocket.close(code=1011)
        return

    await websocket.send_text(json.dumps({
        "type": "history",
        "conversation_id": conversation_id,
        "messages": [it.as_dict() for it in session.thread.items],
    }))
    writer = asyncio.create_task(_forward(websocket, listener))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid message payload"}))
                continue
            kind = msg.get("type", "message")
            try:
                if kind in ("typing_start", "typing_stop"):
                    await session.set_typing(kind == "typing_start")
                elif kind == "read":
                    await session.mark_read()
                elif kind == "retry" and msg.get("temp_id"):
                    await session.retry(msg["temp_id"])
                elif kind == "message" and msg.get("content"):
                    await session.send(msg["content"], msg.get("message_type", "text"))
                else:
                    await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid message payload"}))
            except ChatError as exc:
                await websocket.send_text(json.dumps({"type": "error", "detail": exc.detail, "code": exc.code}))
    except WebSocketDisconnect:
        logger.info("chat_socket_disconnected", conversation_id=conversation_id, user_id=user_id)
    finally:
        ctx.sessions.close(session)
        manager.disconnect(user_id, websocket)
        writer.cancel()
