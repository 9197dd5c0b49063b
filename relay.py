import logging
import secrets
import time
from typing import List, Optional

from sqlalchemy.orm import Session

import channels
import directory
from errors import AuthorizationError, NotFoundError, ValidationError
from models import Message, Ticket, User

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def gen_message_id(ts: int) -> str:
    return f"{ts}_{secrets.token_hex(6)}"


def message_to_payload(message: Message) -> dict:
    return {
        "id": message.id,
        "username": message.username,
        "text": message.text,
        "chat": message.chat,
        "time": message.created_at,
    }


class MessageRelay:
    """Persists chat messages and decides who may write and read them.

    The relay never looks inside ``text``: for direct and group channels
    it is ciphertext produced by the clients.
    """

    def __init__(self, clock=now_ms):
        self.clock = clock

    def _new_message(self, username: str, text: str, chat: str) -> Message:
        ts = self.clock()
        return Message(id=gen_message_id(ts), username=username, text=text, chat=chat, created_at=ts)

    def _store(self, db: Session, username: str, text: str, chat: str) -> Message:
        message = self._new_message(username, text, chat)
        with directory.transaction(db):
            db.add(message)
        db.refresh(message)
        return message

    def submit(self, db: Session, author: Optional[User], text: Optional[str], chat: Optional[str]) -> Message:
        if author is None or not author.username or not text or not chat:
            raise ValidationError("username, text and chat are required")

        if chat == channels.TICKETS_CHANNEL and not author.is_admin:
            logger.info("[MSG] %s darf nicht in %s schreiben", author.username, chat)
            raise AuthorizationError("Only the administrator can write here")

        if channels.channel_kind(db, chat) is None:
            raise NotFoundError(f"Chat {chat} not found")
        if not channels.can_address(db, author, chat):
            raise AuthorizationError(f"You can't write to {chat}")

        return self._store(db, author.username, text, chat)

    def post_bot_reply(self, db: Session, text: str) -> Message:
        return self._store(db, channels.BOT_USERNAME, text, channels.SYSTEM_CHANNEL)

    def post_ticket(self, db: Session, username: str, text: str) -> Message:
        # Ticket und Kanalnachricht gehören in dieselbe Transaktion
        message = self._new_message(username, f"[TICKET] {text}", channels.TICKETS_CHANNEL)
        with directory.transaction(db):
            db.add(Ticket(username=username, text=text))
            db.add(message)
        db.refresh(message)
        return message

    def delete(self, db: Session, message_id: Optional[str], chat: Optional[str], requester: User) -> bool:
        if not message_id or not chat:
            raise ValidationError("id and chat are required")

        message = db.query(Message).filter(Message.id == message_id, Message.chat == chat).first()
        if message is None:
            return False
        if message.username != requester.username and not requester.is_admin:
            raise AuthorizationError("You can only delete your own messages")

        with directory.transaction(db):
            db.delete(message)
        return True

    def history(self, db: Session, chat: str, requester: Optional[User] = None) -> List[Message]:
        if chat == channels.TICKETS_CHANNEL and not (requester is not None and requester.is_admin):
            raise AuthorizationError("Only the administrator can read tickets")
        if requester is not None and chat != channels.SYSTEM_CHANNEL:
            if not channels.can_address(db, requester, chat):
                raise AuthorizationError(f"You can't read {chat}")

        return (
            db.query(Message)
            .filter(Message.chat == chat)
            .order_by(Message.created_at.asc(), Message.seq.asc())
            .all()
        )
