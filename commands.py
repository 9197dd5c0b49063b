"""Slash commands typed into the ``settings`` channel.

``CommandInterpreter.execute`` always answers with a reply string; any
error raised by the directory is turned into that reply. Side effects
the gateway has to publish are returned as events next to the reply.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import channels
import directory
from errors import ChatError
from models import Message, User
from relay import MessageRelay
from settings import settings

logger = logging.getLogger(__name__)

# Argument-Arten
NO_ARG = 0
ONE_ARG = 1
REST = 2


@dataclass
class ChannelCreated:
    chat: str
    audience: List[str]
    is_dm: bool = False


@dataclass
class ChannelDeleted:
    chat: str
    audience: List[str]


@dataclass
class BroadcastMessage:
    message: Message


@dataclass
class Broadcast:
    event: str
    payload: dict = field(default_factory=dict)


@dataclass
class UserRenamed:
    old: str
    new: str


@dataclass
class CommandResult:
    reply: str
    events: List[object] = field(default_factory=list)


@dataclass(frozen=True)
class Command:
    name: str
    arity: int
    usage: str
    summary: str
    handler: Callable


class CommandInterpreter:
    def __init__(self, relay: MessageRelay, code_attempts: Optional[int] = None):
        self.relay = relay
        self.code_attempts = code_attempts or settings.CODE_GENERATION_ATTEMPTS
        self.commands: Dict[str, Command] = {
            c.name: c
            for c in (
                Command("/help", NO_ARG, "/help", "list commands", self.cmd_help),
                Command("/msg", ONE_ARG, "/msg <username>", "open DM with user", self.cmd_msg),
                Command("/change_name", ONE_ARG, "/change_name <nick>", "change username", self.cmd_change_name),
                Command("/Ucode", NO_ARG, "/Ucode", "get user code", self.cmd_ucode),
                Command("/finduser", ONE_ARG, "/finduser <code>", "find user by code", self.cmd_finduser),
                Command("/create_group", ONE_ARG, "/create_group <name>", "create group", self.cmd_create_group),
                Command("/Gcode", ONE_ARG, "/Gcode <group>", "get group code", self.cmd_gcode),
                Command("/join_group", ONE_ARG, "/join_group <code>", "join group", self.cmd_join_group),
                Command(
                    "/delete_group-channel",
                    ONE_ARG,
                    "/delete_group-channel <name>",
                    "delete group",
                    self.cmd_delete_group,
                ),
                Command("/ticket", REST, "/ticket <text>", "submit ticket", self.cmd_ticket),
                Command("/x", NO_ARG, "/x", "???", self.cmd_x),
            )
        }

    def execute(self, db: Session, user: User, raw_line: str) -> CommandResult:
        line = (raw_line or "").strip()
        parts = line.split()
        if not parts:
            return CommandResult("Unknown command. Try /help")

        command = self.commands.get(parts[0])
        if command is None:
            return CommandResult("Unknown command. Try /help")

        arg = None
        if command.arity == ONE_ARG:
            arg = parts[1] if len(parts) > 1 else None
        elif command.arity == REST:
            arg = line[len(parts[0]):].strip() or None
        if command.arity != NO_ARG and arg is None:
            return CommandResult(f"Usage: {command.usage}")

        logger.debug("[CMD] %s: %s", user.username, command.name)
        try:
            return command.handler(db, user, arg)
        except ChatError as e:
            return CommandResult(e.detail)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("[CMD] %s fehlgeschlagen", command.name)
            return CommandResult("Something went wrong, try again")

    # ---------- Handler ----------
    def cmd_help(self, db: Session, user: User, arg) -> CommandResult:
        lines = [f"  {c.usage} - {c.summary}" for c in self.commands.values()]
        return CommandResult("Commands:\n" + "\n".join(lines))

    def cmd_msg(self, db: Session, user: User, other: str) -> CommandResult:
        if other == user.username:
            return CommandResult("Can't message yourself")
        if not directory.user_exists(db, other):
            return CommandResult(f"User {other} not found")

        chat = channels.direct_channel(user.username, other)
        return CommandResult(
            f"Opening chat with {other}...",
            [ChannelCreated(chat=chat, audience=[user.username, other], is_dm=True)],
        )

    def cmd_change_name(self, db: Session, user: User, new_name: str) -> CommandResult:
        reserved = channels.RESERVED_NAMES | {settings.ADMIN_USERNAME}
        old = directory.rename_user(db, user, new_name, reserved=reserved)
        return CommandResult(f"Username changed to {new_name}", [UserRenamed(old=old, new=new_name)])

    def cmd_ucode(self, db: Session, user: User, arg) -> CommandResult:
        code = directory.ensure_user_code(db, user, attempts=self.code_attempts)
        return CommandResult(f"Your code: {code}")

    def cmd_finduser(self, db: Session, user: User, code: str) -> CommandResult:
        found = directory.find_user_by_code(db, code)
        return CommandResult(f"Found: {found}" if found else "User not found")

    def cmd_create_group(self, db: Session, user: User, name: str) -> CommandResult:
        directory.create_group(db, name, user.username, reserved=channels.RESERVED_NAMES)
        logger.info("[CMD] Gruppe %s von %s angelegt", name, user.username)
        return CommandResult(f"Group {name} created", [ChannelCreated(chat=name, audience=[user.username])])

    def cmd_gcode(self, db: Session, user: User, name: str) -> CommandResult:
        group = directory.require_group(db, name)
        if not directory.is_member(db, name, user.username):
            return CommandResult("You are not in this group")
        code = directory.ensure_group_code(db, group, attempts=self.code_attempts)
        return CommandResult(f"Group code: {code}")

    def cmd_join_group(self, db: Session, user: User, code: str) -> CommandResult:
        group = directory.get_group_by_code(db, code)
        if group is None:
            return CommandResult("Group not found")
        directory.add_member(db, group.name, user.username)
        return CommandResult(f"Joined group {group.name}", [ChannelCreated(chat=group.name, audience=[user.username])])

    def cmd_delete_group(self, db: Session, user: User, name: str) -> CommandResult:
        members = directory.delete_group(db, name, user.username)
        logger.info("[CMD] Gruppe %s von %s gelöscht", name, user.username)
        return CommandResult("Group deleted", [ChannelDeleted(chat=name, audience=members)])

    def cmd_ticket(self, db: Session, user: User, text: str) -> CommandResult:
        message = self.relay.post_ticket(db, user.username, text)
        admins = directory.admin_usernames(db)
        return CommandResult(
            "Ticket sent",
            [BroadcastMessage(message), ChannelCreated(chat=channels.TICKETS_CHANNEL, audience=admins)],
        )

    def cmd_x(self, db: Session, user: User, arg) -> CommandResult:
        return CommandResult("", [Broadcast("easter_egg")])
