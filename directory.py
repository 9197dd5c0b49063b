"""Identity directory: users, groups, memberships and codes.

Thin CRUD layer over the SQLAlchemy session. Every mutating function
commits its own unit of work, so a failure never leaves a half-applied
invariant behind (e.g. a group without its owner as member).
"""
import logging
import re
import secrets
import string
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from models import Group, GroupMember, Message, User

logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[A-Za-z0-9_-]{2,32}$")


def valid_name(name: Optional[str]) -> bool:
    return bool(name) and NAME_RE.match(name) is not None


@contextmanager
def transaction(db: Session):
    """Commit on success; roll back on any error.

    IntegrityError propagates so callers can map it to the conflict they
    expect; a lost connection becomes a TransientStoreError.
    """
    try:
        yield
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except OperationalError as e:
        db.rollback()
        logger.error("[DB] Speicher nicht erreichbar: %s", e)
        raise TransientStoreError("Storage unavailable, try again")
    except Exception:
        db.rollback()
        raise


# ---------- Codes ----------
def _draw(alphabet: str, n: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(n))


def generate_user_code() -> str:
    # abcdEF-1234
    return (
        _draw(string.ascii_lowercase, 4)
        + _draw(string.ascii_uppercase, 2)
        + "-"
        + _draw(string.digits, 4)
    )


def generate_group_code() -> str:
    # 123ABC456D
    return (
        _draw(string.digits, 3)
        + _draw(string.ascii_uppercase, 3)
        + _draw(string.digits, 3)
        + _draw(string.ascii_uppercase, 1)
    )


def _assign_code(db: Session, column, row, key_column, key, generate, attempts: int) -> str:
    # Bedingtes Update: nur setzen, solange noch kein Code existiert.
    # Verliert man ein Rennen, gewinnt der bereits gespeicherte Code.
    for attempt in range(1, attempts + 1):
        code = generate()
        try:
            with transaction(db):
                db.execute(
                    update(column.class_)
                    .where(key_column == key, column.is_(None))
                    .values({column.key: code})
                )
        except IntegrityError:
            logger.warning("[DB] Code-Kollision (%s), Versuch %d/%d", column.key, attempt, attempts)
            continue
        db.refresh(row)
        stored = getattr(row, column.key)
        if stored:
            return stored
    raise TransientStoreError("Could not generate a code, try again")


# ---------- Users ----------
def get_user(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def user_exists(db: Session, username: str) -> bool:
    return get_user(db, username) is not None


def user_ids(db: Session, usernames) -> List[int]:
    names = list(set(usernames))
    if not names:
        return []
    return list(db.scalars(select(User.id).where(User.username.in_(names))))


def admin_usernames(db: Session) -> List[str]:
    return list(db.scalars(select(User.username).where(User.is_admin.is_(True))))


def find_user_by_code(db: Session, code: str) -> Optional[str]:
    user = db.query(User).filter(User.user_code == code).first()
    return user.username if user else None


def ensure_user_code(db: Session, user: User, attempts: int = 5) -> str:
    if user.user_code:
        return user.user_code
    return _assign_code(db, User.user_code, user, User.id, user.id, generate_user_code, attempts)


def is_reserved(name: str, reserved) -> bool:
    # Groß-/Kleinschreibung egal, wie bei der Registrierung
    return name.lower() in {r.lower() for r in reserved}


def _direct_chats_of(db: Session, username: str) -> List[str]:
    from channels import DM_SEPARATOR

    rows = db.scalars(
        select(Message.chat)
        .where(
            or_(
                Message.chat.startswith(f"{username}{DM_SEPARATOR}", autoescape=True),
                Message.chat.endswith(f"{DM_SEPARATOR}{username}", autoescape=True),
            )
        )
        .distinct()
    )
    return [c for c in rows if username in c.split(DM_SEPARATOR) and c.count(DM_SEPARATOR) == 1]


def rename_user(db: Session, user: User, new_name: str, reserved=()) -> str:
    """Rename ``user`` and carry group ownership, memberships and DM history along.

    Messages of the user's DM channels move to the channel named after
    the new username, so a later owner of the old name sees none of them.
    """
    from channels import DM_SEPARATOR, direct_channel

    if not valid_name(new_name) or is_reserved(new_name, reserved):
        raise ValidationError("Invalid username")
    if new_name == user.username:
        raise ConflictError("Username taken")
    if user_exists(db, new_name):
        raise ConflictError("Username taken")

    old_name = user.username
    moves = {}
    for chat in _direct_chats_of(db, old_name):
        left, right = chat.split(DM_SEPARATOR)
        other = right if left == old_name else left
        moves[chat] = direct_channel(new_name, other)

    try:
        with transaction(db):
            user.username = new_name
            db.execute(update(Group).where(Group.owner == old_name).values(owner=new_name))
            db.execute(
                update(GroupMember).where(GroupMember.username == old_name).values(username=new_name)
            )
            for old_chat, new_chat in moves.items():
                db.execute(update(Message).where(Message.chat == old_chat).values(chat=new_chat))
    except IntegrityError:
        raise ConflictError("Username taken")
    logger.info("[DB] User %s heißt jetzt %s (%d DM-Chats verschoben)", old_name, new_name, len(moves))
    return old_name


# ---------- Groups ----------
def get_group(db: Session, name: str) -> Optional[Group]:
    return db.query(Group).filter(Group.name == name).first()


def get_group_by_code(db: Session, code: str) -> Optional[Group]:
    return db.query(Group).filter(Group.group_code == code).first()


def list_groups(db: Session) -> List[Group]:
    return db.query(Group).order_by(Group.name.asc()).all()


def list_members(db: Session, group_name: str) -> List[str]:
    return list(
        db.scalars(
            select(GroupMember.username)
            .where(GroupMember.group_name == group_name)
            .order_by(GroupMember.id.asc())
        )
    )


def is_member(db: Session, group_name: str, username: str) -> bool:
    return (
        db.query(GroupMember)
        .filter(GroupMember.group_name == group_name, GroupMember.username == username)
        .first()
        is not None
    )


def create_group(db: Session, name: str, owner: str, reserved=()) -> Group:
    if not valid_name(name) or is_reserved(name, reserved):
        raise ValidationError("Invalid group name")
    if get_group(db, name):
        raise ConflictError("Group exists")

    group = Group(name=name, owner=owner)
    try:
        with transaction(db):
            db.add(group)
            db.add(GroupMember(group_name=name, username=owner))
    except IntegrityError:
        # jemand anderes war schneller
        raise ConflictError("Group exists")
    db.refresh(group)
    return group


def add_member(db: Session, group_name: str, username: str) -> None:
    if is_member(db, group_name, username):
        raise ConflictError("Already in group")
    try:
        with transaction(db):
            db.add(GroupMember(group_name=group_name, username=username))
    except IntegrityError:
        raise ConflictError("Already in group")


def ensure_group_code(db: Session, group: Group, attempts: int = 5) -> str:
    if group.group_code:
        return group.group_code
    return _assign_code(db, Group.group_code, group, Group.id, group.id, generate_group_code, attempts)


def delete_group(db: Session, name: str, requester: str) -> List[str]:
    """Delete a group owned by ``requester``; returns the former members."""
    group = get_group(db, name)
    if group is None or group.owner != requester:
        raise AuthorizationError("You are not owner")

    members = list_members(db, name)
    with transaction(db):
        db.execute(delete(GroupMember).where(GroupMember.group_name == name))
        db.execute(delete(Group).where(Group.name == name))
    db.expire_all()
    return members


def require_group(db: Session, name: str) -> Group:
    group = get_group(db, name)
    if group is None:
        raise NotFoundError("Group not found")
    return group

