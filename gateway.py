import logging
from typing import Any, Dict, Iterable, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import channels
import directory
from calls import CallRelay, Delivery
from commands import (
    Broadcast,
    BroadcastMessage,
    ChannelCreated,
    ChannelDeleted,
    CommandInterpreter,
    UserRenamed,
)
from errors import ChatError, NotFoundError, ValidationError
from models import User
from relay import MessageRelay, message_to_payload

logger = logging.getLogger(__name__)


# ---------- WebSocket Manager ----------
class ConnectionManager:
    def __init__(self):
        # user_id -> Liste von Verbindungen (mehrere Tabs)
        self.active_connections: Dict[int, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)
        logger.info("[WS] User %s verbunden. Aktive: %s", user_id, list(self.active_connections.keys()))

    def disconnect(self, websocket: WebSocket, user_id: int):
        conns = self.active_connections.get(user_id)
        if not conns:
            return
        if websocket in conns:
            conns.remove(websocket)
        if not conns:
            del self.active_connections[user_id]
        logger.info("[WS] User %s getrennt. Aktive: %s", user_id, list(self.active_connections.keys()))

    def is_connected(self, user_id: int) -> bool:
        return bool(self.active_connections.get(user_id))

    async def send_personal(self, user_id: int, message: dict):
        conns = list(self.active_connections.get(user_id, []))
        to_remove = []
        for ws in conns:
            try:
                await ws.send_json(message)
            except WebSocketDisconnect:
                to_remove.append(ws)
            except Exception as e:
                logger.debug("[WS] Senden an User %s fehlgeschlagen: %s", user_id, e)
                to_remove.append(ws)
        for ws in to_remove:
            self.disconnect(ws, user_id)

    async def broadcast(self, message: dict):
        for uid in list(self.active_connections.keys()):
            await self.send_personal(uid, message)


def event(type_: str, payload: Optional[dict] = None) -> dict:
    out = {"type": type_}
    out.update(payload or {})
    return out


class SessionGateway:
    """Routes inbound WebSocket events of one bound user to the relays."""

    def __init__(
        self,
        manager: ConnectionManager,
        relay: MessageRelay,
        calls: CallRelay,
        interpreter: Optional[CommandInterpreter] = None,
    ):
        self.manager = manager
        self.relay = relay
        self.calls = calls
        self.interpreter = interpreter or CommandInterpreter(relay)
        self.handlers = {
            "send_message": self.on_send_message,
            "delete_message": self.on_delete_message,
            "typing": self.on_typing,
            "stop_typing": self.on_stop_typing,
            "call_initiate": self.on_call_initiate,
            "call_signal": self.on_call_signal,
            "call_accept": self.on_call_accept,
            "call_reject": self.on_call_reject,
            "call_end": self.on_call_end,
        }

    # ---------- Ausgabe ----------
    async def send_to_users(self, db: Session, usernames: Iterable[str], message: dict):
        for uid in directory.user_ids(db, usernames):
            await self.manager.send_personal(uid, message)

    async def publish(self, db: Session, message: dict, audience: Optional[List[str]]):
        if audience is None:
            await self.manager.broadcast(message)
        else:
            await self.send_to_users(db, audience, message)

    async def deliver(self, db: Session, deliveries: List[Delivery]):
        for d in deliveries:
            await self.send_to_users(db, [d.to], event(d.event, d.payload))

    async def publish_message(self, db: Session, message):
        await self.publish(
            db,
            event("new_message", message_to_payload(message)),
            channels.audience(db, message.chat),
        )

    # ---------- Eingang ----------
    async def dispatch(self, db: Session, websocket: WebSocket, user: User, data: Any):
        if not isinstance(data, dict):
            await websocket.send_json(event("error", {"event": None, "detail": "Invalid payload"}))
            return

        msg_type = data.get("type")
        if not isinstance(msg_type, str):
            msg_type = None
        try:
            handler = self.handlers.get(msg_type)
            if handler is None:
                raise ValidationError(f"Unknown event {msg_type}")
            await handler(db, user, data)
        except ChatError as e:
            await websocket.send_json(event("error", {"event": msg_type, "detail": e.detail}))
        except SQLAlchemyError:
            db.rollback()
            logger.exception("[WS] DB-Fehler bei %s von %s", msg_type, user.username)
            await websocket.send_json(event("error", {"event": msg_type, "detail": "Something went wrong, try again"}))

    async def on_disconnect(self, db: Session, user_id: int):
        if self.manager.is_connected(user_id):
            return
        user = directory.get_user_by_id(db, user_id)
        if user is None:
            return
        await self.deliver(db, self.calls.disconnect(user.username))

    @staticmethod
    def check_identity(user: User, data: dict, field: str):
        # Die Identität kommt aus dem Token, nie aus dem Payload
        claimed = data.get(field)
        if claimed and claimed != user.username:
            logger.warning("[WS] %s gibt sich als %s aus", user.username, claimed)
            raise ValidationError(f"{field} does not match your session")

    # ---------- Nachrichten ----------
    async def on_send_message(self, db: Session, user: User, data: dict):
        self.check_identity(user, data, "username")
        text = data.get("text")
        chat = data.get("chat")

        if chat == channels.SYSTEM_CHANNEL and isinstance(text, str) and text.startswith("/"):
            await self.run_command(db, user, text)
            return

        message = self.relay.submit(db, user, text, chat)
        await self.publish_message(db, message)

    async def run_command(self, db: Session, user: User, text: str):
        result = self.interpreter.execute(db, user, text)
        if result.reply:
            reply = self.relay.post_bot_reply(db, result.reply)
            await self.publish_message(db, reply)

        for ev in result.events:
            if isinstance(ev, ChannelCreated):
                if ev.is_dm:
                    for name in ev.audience:
                        other = next((n for n in ev.audience if n != name), name)
                        payload = {"chat": ev.chat, "isDM": True, "user2": other}
                        await self.send_to_users(db, [name], event("chat_created", payload))
                else:
                    await self.send_to_users(db, ev.audience, event("chat_created", {"chat": ev.chat}))
            elif isinstance(ev, ChannelDeleted):
                await self.send_to_users(db, ev.audience, event("chat_deleted", {"chat": ev.chat}))
            elif isinstance(ev, BroadcastMessage):
                await self.publish_message(db, ev.message)
            elif isinstance(ev, Broadcast):
                await self.manager.broadcast(event(ev.event, ev.payload))
            elif isinstance(ev, UserRenamed):
                self.calls.rename(ev.old, ev.new)

    async def on_delete_message(self, db: Session, user: User, data: dict):
        self.check_identity(user, data, "username")
        msg_id = data.get("id")
        chat = data.get("chat")
        if not self.relay.delete(db, msg_id, chat, user):
            raise NotFoundError("Message not found")
        await self.publish(db, event("message_deleted", {"id": msg_id, "chat": chat}), channels.audience(db, chat))

    async def on_typing(self, db: Session, user: User, data: dict):
        self.check_identity(user, data, "username")
        chat = data.get("chat")
        if not chat:
            raise ValidationError("chat is required")
        await self.publish(
            db,
            event("user_typing", {"chat": chat, "username": user.username}),
            channels.audience(db, chat),
        )

    async def on_stop_typing(self, db: Session, user: User, data: dict):
        chat = data.get("chat")
        if not chat:
            raise ValidationError("chat is required")
        await self.publish(db, event("user_stopped_typing", {"chat": chat}), channels.audience(db, chat))

    # ---------- Anrufe ----------
    async def on_call_initiate(self, db: Session, user: User, data: dict):
        self.check_identity(user, data, "from")
        to = data.get("to")
        if to and to != user.username and not directory.user_exists(db, to):
            raise NotFoundError(f"User {to} not found")
        await self.deliver(db, self.calls.initiate(user.username, to, data.get("offer")))

    async def on_call_signal(self, db: Session, user: User, data: dict):
        await self.deliver(db, self.calls.signal(user.username, data.get("to"), data.get("signal")))

    async def on_call_accept(self, db: Session, user: User, data: dict):
        await self.deliver(db, self.calls.accept(user.username, data.get("caller"), data.get("answer")))

    async def on_call_reject(self, db: Session, user: User, data: dict):
        await self.deliver(db, self.calls.reject(user.username, data.get("caller")))

    async def on_call_end(self, db: Session, user: User, data: dict):
        await self.deliver(db, self.calls.end(user.username, data.get("to")))
