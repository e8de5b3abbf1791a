import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, FastAPI, Header, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse
from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

import config
from broadcast import Connection, RoomRegistry
from database import MemoryStore, db
from errors import AuthError, ChatError, IntegrityError, ValidationError
from events import ErrorEvent, client_frames
from presence import TypingTracker
from schemas import CamelModel, ChatRoom, MessageWithSender, PublicUser, RoomDetail, RoomSummary, RoomType
from service import ChatService
from sessions import SessionTable, bearer_token

logger = logging.getLogger(__name__)

router = APIRouter()

# -----------------------------
# Utilities
# -----------------------------

def build_service(store: Optional[MemoryStore] = None) -> ChatService:
    store = store if store is not None else db
    return ChatService(
        store=store,
        registry=RoomRegistry(),
        tracker=TypingTracker(store),
        sessions=SessionTable(),
    )


def get_service(conn: HTTPConnection) -> ChatService:
    return conn.app.state.service


def check_id(value: str, kind: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {kind} id")
    return value


def current_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return bearer_token(authorization)


def current_user_id(
    token: Optional[str] = Depends(current_token),
    service: ChatService = Depends(get_service),
) -> str:
    return service.current_user(token).id


# -----------------------------
# Schemas (Requests / Responses)
# -----------------------------

class SignupRequest(CamelModel):
    username: str = ""
    display_name: str = ""
    password: str = ""
    confirm_password: str = ""


class LoginRequest(CamelModel):
    username: str = ""
    password: str = ""


class AuthResponse(PublicUser):
    session_id: str


class CreateRoom(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    avatar: Optional[str] = None
    type: RoomType = RoomType.GROUP


class AddMember(CamelModel):
    username: str


class SendMessage(CamelModel):
    content: str = Field(..., min_length=1, max_length=5000)


class SetTyping(CamelModel):
    is_typing: bool = True


def auth_response(user, token: str) -> AuthResponse:
    return AuthResponse(**user.public().model_dump(), session_id=token)


# -----------------------------
# Root & Health
# -----------------------------

@router.get("/")
async def read_root():
    return {"message": "Chat API is running"}


@router.get("/test")
async def test_database(service: ChatService = Depends(get_service)):
    return {
        "backend": "✅ Running",
        "database": "✅ In-memory",
        "collections": service.store.stats(),
        "live_rooms": service.registry.rooms(),
        "sessions": len(service.sessions),
        "pending_typing_timers": service.tracker.pending(),
    }


# -----------------------------
# Auth
# -----------------------------

@router.post("/api/auth/signup", response_model=AuthResponse)
async def signup(payload: SignupRequest, service: ChatService = Depends(get_service)):
    user, token = service.signup(
        payload.username, payload.display_name, payload.password, payload.confirm_password
    )
    return auth_response(user, token)


@router.post("/api/auth/login", response_model=AuthResponse)
async def login(payload: LoginRequest, service: ChatService = Depends(get_service)):
    user, token = service.login(payload.username, payload.password)
    return auth_response(user, token)


@router.post("/api/auth/logout")
async def logout(token: Optional[str] = Depends(current_token), service: ChatService = Depends(get_service)):
    service.logout(token)
    return {"success": True}


@router.get("/api/auth/me", response_model=PublicUser)
async def me(token: Optional[str] = Depends(current_token), service: ChatService = Depends(get_service)):
    return service.current_user(token).public()


# -----------------------------
# Users
# -----------------------------

@router.get("/api/users/{user_id}", response_model=PublicUser)
async def get_user(
    user_id: str,
    _: str = Depends(current_user_id),
    service: ChatService = Depends(get_service),
):
    return service.get_user(check_id(user_id, "user"))


# -----------------------------
# Rooms
# -----------------------------

@router.get("/api/rooms", response_model=List[RoomSummary])
async def list_rooms(user_id: str = Depends(current_user_id), service: ChatService = Depends(get_service)):
    return service.list_rooms(user_id)


@router.post("/api/rooms", response_model=ChatRoom)
async def create_room(
    payload: CreateRoom,
    user_id: str = Depends(current_user_id),
    service: ChatService = Depends(get_service),
):
    return service.create_room(user_id, payload.model_dump())


@router.get("/api/rooms/{room_id}", response_model=RoomDetail)
async def get_room(room_id: str, user_id: str = Depends(current_user_id), service: ChatService = Depends(get_service)):
    return service.room_detail(user_id, check_id(room_id, "room"))


@router.post("/api/rooms/{room_id}/members", response_model=RoomDetail)
async def add_member(
    room_id: str,
    payload: AddMember,
    user_id: str = Depends(current_user_id),
    service: ChatService = Depends(get_service),
):
    return service.add_member(user_id, check_id(room_id, "room"), payload.username)


# -----------------------------
# Messages
# -----------------------------

@router.get("/api/rooms/{room_id}/messages", response_model=List[MessageWithSender])
async def get_messages(
    room_id: str,
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=0, le=config.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(current_user_id),
    service: ChatService = Depends(get_service),
):
    return service.list_messages(user_id, check_id(room_id, "room"), limit, offset)


@router.post("/api/rooms/{room_id}/messages", response_model=MessageWithSender)
async def send_message(
    room_id: str,
    payload: SendMessage,
    user_id: str = Depends(current_user_id),
    service: ChatService = Depends(get_service),
):
    return await service.send_message(user_id, check_id(room_id, "room"), payload.content)


# -----------------------------
# Typing
# -----------------------------

@router.post("/api/rooms/{room_id}/typing")
async def set_typing(
    room_id: str,
    payload: SetTyping,
    user_id: str = Depends(current_user_id),
    service: ChatService = Depends(get_service),
):
    await service.set_typing(user_id, check_id(room_id, "room"), payload.is_typing)
    return {"success": True}


@router.get("/api/rooms/{room_id}/typing", response_model=List[PublicUser])
async def get_typing(room_id: str, user_id: str = Depends(current_user_id), service: ChatService = Depends(get_service)):
    return service.list_typing(user_id, check_id(room_id, "room"))


# -----------------------------
# Push channel
# -----------------------------

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, service: ChatService = Depends(get_service)):
    token = bearer_token(websocket.headers.get("authorization")) or websocket.query_params.get("token")
    try:
        user = service.current_user(token)
    except AuthError:
        logger.warning("Rejected push connection without a valid session")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = Connection(websocket, user.id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
            raw = message.get("text")
            try:
                frame = client_frames.validate_json(raw) if raw is not None else None
            except PydanticValidationError:
                frame = None
            if frame is None:
                await connection.send(ErrorEvent(message="Malformed frame"))
                continue
            logger.debug(f"Frame {frame.type} from {connection!r}")
            await service.handle_frame(connection, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await service.disconnect(connection)


# -----------------------------
# App
# -----------------------------

async def handle_chat_error(request, exc: ChatError):
    if isinstance(exc, IntegrityError):
        logger.exception(f"Integrity error on {request.url.path}: {exc.message}", exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def handle_request_validation(request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app(service: Optional[ChatService] = None) -> FastAPI:
    service = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        service.shutdown()

    app = FastAPI(title="Chat App API", lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, handle_chat_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(app, host=config.HOST, port=config.PORT)
