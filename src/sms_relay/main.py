from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .config import configure_logging, get_settings
from .db import SessionLocal, init_db
from .directory import ParticipantDirectory, atomic
from .errors import RelayError
from .fanout import FanoutEngine
from .identity import ExternalContact, Identity, InternalUser
from .inbound import InboundRouter, RoutedMessage
from .numbers import NumberAllocator, get_allocator
from .phone import mask, normalize
from .sms import (
    AddParticipantIn,
    ConversationOut,
    DirectConversationIn,
    GroupConversationIn,
    MemberIn,
    MessageOut,
    ParticipantOut,
    PoolNumberIn,
    SendMessageIn,
    SmsConversationIn,
    identity_payload,
    report_payload,
)
from .twilio_client import validate_signature

logger = logging.getLogger(__name__)

EMPTY_TWIML = """<?xml version="1.0" encoding="UTF-8"?>
<Response></Response>"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: runs once before the app starts serving requests
    configure_logging()
    init_db()
    allocator = get_allocator()
    db = SessionLocal()
    try:
        with atomic(db):
            allocator.seed(db, get_settings().pool_seed_numbers())
        allocator.load(db)
    finally:
        db.close()
    yield


app = FastAPI(title="sms-relay", version="0.1.0", lifespan=lifespan)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse({"error": exc.code, "detail": str(exc)}, status_code=exc.status_code)


# --- Admin protection ---

ALLOWED_ADMIN_IPS = {"127.0.0.1", "::1"}


def verify_admin(request: Request) -> None:
    """
    Simple protection for /admin endpoints:
    - only allow requests from ALLOWED_ADMIN_IPS
    - require X-Admin-Token header that matches ADMIN_TOKEN env var
    """
    client_host = request.client.host if request.client else None

    if client_host not in ALLOWED_ADMIN_IPS:
        raise HTTPException(status_code=403, detail="Forbidden")

    admin_token = get_settings().admin_token
    if not admin_token:
        # Misconfiguration; safer to refuse access than to expose data.
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")

    header_token = request.headers.get("X-Admin-Token")
    if header_token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# --- Dependencies ---


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_directory(allocator: NumberAllocator = Depends(get_allocator)) -> ParticipantDirectory:
    return ParticipantDirectory(allocator=allocator)


def get_fanout(directory: ParticipantDirectory = Depends(get_directory)) -> FanoutEngine:
    return FanoutEngine(directory=directory)


def get_router(fanout: FanoutEngine = Depends(get_fanout)) -> InboundRouter:
    return InboundRouter(fanout=fanout)


def _webhook_url(request: Request) -> str:
    base = get_settings().public_base_url
    if base:
        url = base.rstrip("/") + request.url.path
        if request.url.query:
            url += "?" + request.url.query
        return url
    return str(request.url)


async def _verified_form(request: Request) -> dict[str, str]:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if get_settings().validate_webhooks:
        signature = request.headers.get("X-Twilio-Signature")
        if not validate_signature(_webhook_url(request), params, signature):
            logger.warning("Rejected webhook %s with invalid signature", request.url.path)
            raise HTTPException(status_code=403, detail="Forbidden")
    return params


def _identity(member: MemberIn) -> Identity:
    try:
        return member.to_identity()
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


# --- Webhooks ---


@app.post("/sms/inbound")
async def sms_inbound(
    request: Request,
    db: Session = Depends(get_db),
    router: InboundRouter = Depends(get_router),
) -> Response:
    """
    Twilio SMS webhook.

    Once the signature checks out the answer is always an empty TwiML 200,
    matched or not, so Twilio neither auto-replies nor redelivers.
    """
    params = await _verified_form(request)
    from_raw = params.get("From", "")
    try:
        result = await run_in_threadpool(
            router.route,
            db,
            from_raw,
            params.get("To", ""),
            params.get("Body", ""),
            params.get("MessageSid") or params.get("SmsSid"),
        )
    except Exception:
        logger.exception("Failed to route inbound SMS from %s", mask(from_raw))
    else:
        if not isinstance(result, RoutedMessage):
            logger.info("Inbound SMS from %s not attached: %s", mask(from_raw), result.reason)

    return Response(content=EMPTY_TWIML, media_type="application/xml")


@app.post("/sms/status")
async def sms_status(
    request: Request,
    db: Session = Depends(get_db),
    fanout: FanoutEngine = Depends(get_fanout),
) -> Response:
    params = await _verified_form(request)
    sid = params.get("MessageSid") or params.get("SmsSid")
    status = params.get("MessageStatus") or params.get("SmsStatus")
    if sid and status:
        try:
            await run_in_threadpool(
                fanout.apply_status_callback, db, sid, status, params.get("ErrorCode")
            )
        except Exception:
            logger.exception("Failed to apply status %s for %s", status, sid)
    return Response(content="OK", media_type="text/plain")


# --- Conversations ---


@app.post("/conversations/direct", status_code=201)
def create_direct(
    payload: DirectConversationIn,
    response: Response,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> ConversationOut:
    """201 for a new conversation, 200 when the pair already has one."""
    members = [InternalUser(payload.user_id), InternalUser(payload.recipient_id)]
    reused = (
        payload.user_id != payload.recipient_id
        and directory.find_existing(db, "direct", members) is not None
    )
    conversation = directory.create_direct(db, payload.user_id, payload.recipient_id)
    if reused:
        response.status_code = 200
    return ConversationOut.of(conversation)


@app.post("/conversations/sms", status_code=201)
def create_sms(
    payload: SmsConversationIn,
    response: Response,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> ConversationOut:
    members = [
        InternalUser(payload.user_id),
        ExternalContact(normalize(payload.recipient_phone_number)),
    ]
    reused = directory.find_existing(db, "sms", members) is not None
    conversation = directory.create_sms(
        db, payload.user_id, payload.recipient_phone_number, payload.recipient_name
    )
    if reused:
        response.status_code = 200
    return ConversationOut.of(conversation)


@app.post("/conversations/group", status_code=201)
def create_group(
    payload: GroupConversationIn,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> JSONResponse:
    members = [_identity(m) for m in payload.members]
    created = directory.create_group(
        db, payload.user_id, payload.name, members, subject_id=payload.subject_id
    )
    return JSONResponse(
        {
            "conversation": ConversationOut.of(created.conversation).model_dump(mode="json"),
            "excluded": [identity_payload(i) for i in created.excluded],
        },
        status_code=201,
    )


@app.get("/users/{user_id}/conversations")
def user_conversations(
    user_id: int,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> list[ConversationOut]:
    return [ConversationOut.of(c) for c in directory.conversations_for_user(db, user_id)]


@app.delete("/conversations/{conversation_id}", status_code=204)
def deactivate_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> Response:
    directory.deactivate(db, directory.get_conversation(db, conversation_id))
    return Response(status_code=204)


@app.get("/conversations/{conversation_id}/participants")
def list_participants(
    conversation_id: int,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> list[ParticipantOut]:
    conversation = directory.get_conversation(db, conversation_id)
    return [ParticipantOut.of(p) for p in directory.list_active(db, conversation)]


@app.post("/conversations/{conversation_id}/participants", status_code=201)
def add_participant(
    conversation_id: int,
    payload: AddParticipantIn,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> ParticipantOut:
    conversation = directory.get_conversation(db, conversation_id)
    participant = directory.add_participant(
        db, conversation, _identity(payload), display_name=payload.display_name
    )
    return ParticipantOut.of(participant)


@app.delete("/conversations/{conversation_id}/participants/{identity_key}")
def remove_participant(
    conversation_id: int,
    identity_key: str,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> ParticipantOut:
    conversation = directory.get_conversation(db, conversation_id)
    return ParticipantOut.of(directory.remove_participant(db, conversation, identity_key))


@app.post("/conversations/{conversation_id}/messages")
def send_message(
    conversation_id: int,
    payload: SendMessageIn,
    db: Session = Depends(get_db),
    fanout: FanoutEngine = Depends(get_fanout),
) -> JSONResponse:
    conversation = fanout.directory.get_conversation(db, conversation_id)
    report = fanout.send(db, conversation, payload.user_id, payload.body)
    return JSONResponse(report_payload(report), status_code=201)


@app.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: int,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    directory: ParticipantDirectory = Depends(get_directory),
) -> list[MessageOut]:
    conversation = directory.get_conversation(db, conversation_id)
    safe_limit = max(1, min(limit, 200))
    return [
        MessageOut.of(m)
        for m in directory.messages(db, conversation, limit=safe_limit, offset=max(0, offset))
    ]


# --- Number pool admin ---


@app.get("/admin/numbers")
def admin_numbers(
    db: Session = Depends(get_db),
    allocator: NumberAllocator = Depends(get_allocator),
    _: None = Depends(verify_admin),
) -> JSONResponse:
    return JSONResponse(
        {
            "available": allocator.available(db),
            "assigned": [
                {"user_id": user_id, "number": number}
                for user_id, number in allocator.assigned(db)
            ],
        }
    )


@app.post("/admin/numbers", status_code=201)
def admin_add_number(
    payload: PoolNumberIn,
    db: Session = Depends(get_db),
    allocator: NumberAllocator = Depends(get_allocator),
    _: None = Depends(verify_admin),
) -> JSONResponse:
    with atomic(db):
        number = allocator.add_to_pool(db, payload.phone_number)
    return JSONResponse({"number": number}, status_code=201)


@app.delete("/admin/numbers/{number}")
def admin_remove_number(
    number: str,
    db: Session = Depends(get_db),
    allocator: NumberAllocator = Depends(get_allocator),
    _: None = Depends(verify_admin),
) -> JSONResponse:
    with atomic(db):
        removed = allocator.remove_from_pool(db, number)
    return JSONResponse({"number": removed})


@app.post("/admin/users/{user_id}/number")
def admin_assign_number(
    user_id: int,
    db: Session = Depends(get_db),
    allocator: NumberAllocator = Depends(get_allocator),
    _: None = Depends(verify_admin),
) -> JSONResponse:
    with atomic(db):
        number = allocator.assign(db, user_id)
    return JSONResponse({"user_id": user_id, "number": number})


@app.delete("/admin/users/{user_id}/number")
def admin_release_number(
    user_id: int,
    db: Session = Depends(get_db),
    allocator: NumberAllocator = Depends(get_allocator),
    _: None = Depends(verify_admin),
) -> JSONResponse:
    with atomic(db):
        number = allocator.release(db, user_id)
    return JSONResponse({"user_id": user_id, "released": number})
