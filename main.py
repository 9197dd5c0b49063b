# main.py
import json
import logging
from typing import List, Optional

import jwt
from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    status,
    WebSocket,
    WebSocketDisconnect,
    Query,
)
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

import directory
from auth import (
    authenticate,
    create_access_token,
    decode_access_token,
    hash_password,
    register,
    user_to_token_data,
)
from calls import CallRelay
from db import SessionLocal, init_db
from errors import ChatError
from gateway import ConnectionManager, SessionGateway
from models import User
from relay import MessageRelay
from schemas import GroupOut, LoginRequest, MessageOut, Token, UserCreate, UserOut
from settings import settings

# ---------- Setup ----------
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


app = FastAPI(title="Chat Broker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def to_http_error(e: ChatError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.detail)


# ---------- Auth Helper ----------
def user_from_token(token: Optional[str], db: Session) -> Optional[User]:
    if not token:
        return None
    if token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]
    try:
        payload = decode_access_token(token)
        user_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        return None
    return directory.get_user_by_id(db, user_id)


def get_current_user(token: Optional[str] = None, db: Session = Depends(get_db)) -> User:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token missing")
    user = user_from_token(token, db)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return user


# ---------- Admin anlegen ----------
def create_admin_if_needed(db: Session):
    admin_username = settings.ADMIN_USERNAME

    admin = directory.get_user(db, admin_username)
    if admin:
        if not admin.is_admin:
            admin.is_admin = True
            db.commit()
        logger.info("[ADMIN] Admin '%s' existiert (id=%s)", admin_username, admin.id)
        return

    admin = User(
        username=admin_username,
        password_hash=hash_password(settings.ADMIN_PASSWORD),
        public_key="",
        is_admin=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info("[ADMIN] Admin-User '%s' angelegt, id=%s", admin_username, admin.id)


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        create_admin_if_needed(db)
    finally:
        db.close()


manager = ConnectionManager()
message_relay = MessageRelay()
call_relay = CallRelay(ring_timeout=settings.CALL_RING_TIMEOUT)
gateway = SessionGateway(manager, message_relay, call_relay)


@app.get("/health")
def health():
    return {"ok": True}


# ---------- Auth & User ----------
@app.post("/api/register")
def api_register(user_in: UserCreate, db: Session = Depends(get_db)):
    try:
        register(db, user_in.username, user_in.password, user_in.public_key)
    except ChatError as e:
        raise to_http_error(e)
    return {"ok": True}


@app.post("/api/login", response_model=Token)
def api_login(login_in: LoginRequest, db: Session = Depends(get_db)):
    try:
        user = authenticate(db, login_in.username, login_in.password)
    except ChatError as e:
        raise HTTPException(status_code=401, detail=e.detail)

    access_token = create_access_token(user_to_token_data(user))
    return Token(access_token=access_token, token_type="bearer", username=user.username)


@app.get("/api/me", response_model=UserOut)
def me(current_user: User = Depends(get_current_user)):
    return current_user


# ---------- Nachrichten & Gruppen per HTTP ----------
@app.get("/api/messages/{chat}", response_model=List[MessageOut])
def get_messages(
    chat: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        messages = message_relay.history(db, chat, current_user)
    except ChatError as e:
        raise to_http_error(e)
    return [MessageOut.model_validate(m) for m in messages]


@app.get("/api/groups", response_model=List[GroupOut])
def get_groups(db: Session = Depends(get_db)):
    return directory.list_groups(db)


# ---------- WebSocket ----------
@app.websocket("/ws")
async def websocket_chat(websocket: WebSocket, token: str = Query(...)):
    db = SessionLocal()
    user_id: Optional[int] = None

    try:
        user = user_from_token(token, db)
        if not user:
            logger.info("[WS] Ungültiger Token")
            await websocket.close(code=1008)
            return

        user_id = user.id
        await manager.connect(websocket, user_id)

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "event": None, "detail": "Invalid JSON"})
                continue

            # User bei jeder Nachricht neu laden, damit Umbenennungen sofort gelten
            db.expire_all()
            user = directory.get_user_by_id(db, user_id)
            if not user:
                logger.info("[WS] User %s während Session gelöscht", user_id)
                await websocket.close(code=1008)
                return

            await gateway.dispatch(db, websocket, user, data)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception("[WS] Fehler: %s", e)
    finally:
        if user_id is not None:
            manager.disconnect(websocket, user_id)
            try:
                await gateway.on_disconnect(db, user_id)
            except Exception:
                logger.exception("[WS] Aufräumen für User %s fehlgeschlagen", user_id)
        db.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
