"""Channel registry.

Channels are not stored; their kind is derived from the name:
``settings`` (system, commands live here), ``tickets`` (administrator
only), a group name, or two usernames sorted and joined with ``:``. The
separator is outside the name charset, so a DM name never collides with
a group name and maps to exactly one pair.
"""
import enum
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

import directory
from models import User

SYSTEM_CHANNEL = "settings"
TICKETS_CHANNEL = "tickets"
BOT_USERNAME = "settings_bot"
DM_SEPARATOR = ":"

RESERVED_NAMES = frozenset({SYSTEM_CHANNEL, TICKETS_CHANNEL, BOT_USERNAME})


class ChannelKind(str, enum.Enum):
    SYSTEM = "system"
    RESTRICTED = "restricted-system"
    DIRECT = "direct"
    GROUP = "group"


def direct_channel(user1: str, user2: str) -> str:
    return DM_SEPARATOR.join(sorted([user1, user2]))


def parse_direct(db: Session, name: str) -> Optional[Tuple[str, str]]:
    parts = name.split(DM_SEPARATOR)
    if len(parts) != 2:
        return None
    left, right = parts
    # nur die kanonische (sortierte) Schreibweise zählt
    if not left or not right or left >= right:
        return None
    if directory.user_exists(db, left) and directory.user_exists(db, right):
        return left, right
    return None


def channel_kind(db: Session, name: str) -> Optional[ChannelKind]:
    if name == SYSTEM_CHANNEL:
        return ChannelKind.SYSTEM
    if name == TICKETS_CHANNEL:
        return ChannelKind.RESTRICTED
    if DM_SEPARATOR in name:
        return ChannelKind.DIRECT if parse_direct(db, name) is not None else None
    if directory.get_group(db, name) is not None:
        return ChannelKind.GROUP
    return None


def can_address(db: Session, user: User, name: str) -> bool:
    kind = channel_kind(db, name)
    if kind is None:
        return False
    if kind is ChannelKind.SYSTEM:
        return True
    if kind is ChannelKind.RESTRICTED:
        return bool(user.is_admin)
    if kind is ChannelKind.GROUP:
        return directory.is_member(db, name, user.username)
    return user.username in parse_direct(db, name)


def audience(db: Session, name: str) -> Optional[List[str]]:
    """Usernames allowed to see traffic on ``name``; ``None`` means everyone."""
    if name == TICKETS_CHANNEL:
        return directory.admin_usernames(db)
    return None
