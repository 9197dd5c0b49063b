from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import directory
from channels import RESERVED_NAMES
from errors import AuthorizationError, ConflictError, ValidationError
from models import User
from settings import settings

ALGORITHM = "HS256"
# bcrypt verarbeitet nur die ersten 72 Bytes
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    minutes = expires_minutes if expires_minutes is not None else settings.JWT_TTL_MINUTES
    to_encode = dict(data)
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    # wirft jwt.PyJWTError bei falscher Signatur oder abgelaufenem Token
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])


def user_to_token_data(user: User) -> dict:
    return {"sub": str(user.id), "username": user.username}


def register(db: Session, username: str, password: str, public_key: Optional[str] = None) -> User:
    if not username or not password:
        raise ValidationError("empty fields")
    if not directory.valid_name(username):
        raise ValidationError("Username must be 2-32 characters of letters, digits, '_' or '-'")
    if username in RESERVED_NAMES or username.lower() == settings.ADMIN_USERNAME.lower():
        raise ValidationError("This username is reserved")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError("Password is too long")
    if directory.user_exists(db, username):
        raise ConflictError("Username taken")

    user = User(
        username=username,
        password_hash=hash_password(password),
        public_key=public_key or "",
        is_admin=False,
    )
    try:
        with directory.transaction(db):
            db.add(user)
    except IntegrityError:
        raise ConflictError("Username taken")
    db.refresh(user)
    return user


def authenticate(db: Session, username: str, password: str) -> User:
    if not username or not password:
        raise ValidationError("empty fields")
    user = directory.get_user(db, username)
    if user is None or not verify_password(password, user.password_hash):
        raise AuthorizationError("Wrong username or password")
    return user
