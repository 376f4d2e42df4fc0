"""
kbchat - Web API Server
------------------------
FastAPI server exposing document ingestion, the chat turn, voice, the domain
security gate and the embeddable widget script.

Endpoints:
  GET    /api/health                      -> store type, enabled features, models
  POST   /api/documents                   -> upload; ingestion finishes in background
  GET    /api/documents                   -> an owner's documents, newest first
  DELETE /api/documents/{id}              -> remove blob + row (chunks cascade)
  POST   /api/documents/{id}/reprocess    -> rebuild chunks from the stored blob
  POST   /api/attachments                 -> text of a chat attachment (page-capped)
  POST   /api/knowledge-bases             -> create, first files ingested in background
  GET    /api/knowledge-bases             -> an owner's knowledge bases
  GET    /api/knowledge-bases/{id}/documents -> its processed documents
  PATCH  /api/knowledge-bases/{id}        -> rename
  POST   /api/knowledge-bases/{id}/cancel -> abort uploads still running
  DELETE /api/knowledge-bases/{id}        -> delete (documents and chatbots detach)
  POST   /api/chatbots/{id}/access        -> domain/token gate
  GET    /api/chatbots/{id}/embed-snippet -> <script> loader for a site owner
  POST   /api/chat/{id}                   -> one conversation turn
  POST   /api/chat/{id}/voice             -> audio -> transcript -> turn
  POST   /api/chat/{id}/contact           -> capture visitor contact details
  POST   /api/speech                      -> bot message -> audio/mpeg
  GET    /embed/chatbot.js                -> the embed script

Conversation state is not kept server side: the client sends the state it
got back from the previous turn (or nothing, to start a new conversation).

Run from the project root:
    uvicorn app.server:app --reload --port 8000
"""
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

import orjson
from dotenv import load_dotenv
from fastapi import (
    BackgroundTasks,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from kbchat.config import load_settings
from kbchat.conversation.state import ConversationState, TranscriptMessage
from kbchat.embed.snippet import build_iframe_url, render_embed_script, render_embed_snippet
from kbchat.errors import (
    AccessDeniedError,
    ConfigurationError,
    ExtractionError,
    KBChatError,
    StorageError,
    UpstreamError,
    ValidationError,
)
from kbchat.schemas import SUPPORTED_MEDIA_TYPES, Chatbot, Document, KnowledgeBase
from kbchat.serving.services import Services, build_services
from kbchat.utils.logger import setup_logger
from kbchat.voice.recorder import RecordingSession
from kbchat.workspace.knowledge_bases import UploadFile as KnowledgeBaseUpload

load_dotenv()

CONFIG_PATH = os.getenv("KBCHAT_CONFIG", "config/config.yaml")

# First match wins, so subclasses come before their bases.
_STATUS_BY_ERROR = (
    (AccessDeniedError, 403),
    (ValidationError, 400),
    (ConfigurationError, 503),
    (ExtractionError, 422),
    (StorageError, 502),
    (UpstreamError, 502),
)

# ---------------------------------------------------------------------------
# Services singleton
# ---------------------------------------------------------------------------

_services: Optional[Services] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the services once at startup unless they were injected already."""
    global _services
    owned = _services is None
    if owned:
        settings = load_settings(CONFIG_PATH)
        setup_logger(settings.logging.level, settings.logging.file, serialize=settings.logging.json_lines)
        logger.info("[Server] Building services...")
        _services = build_services(settings)
    logger.info(f"[Server] Ready | store={type(_services.store).__name__}")
    yield
    if owned:
        _services = None
        logger.info("[Server] Services released.")


def _svc() -> Services:
    if _services is None:
        raise HTTPException(status_code=503, detail="Services not ready")
    return _services


async def _run(fn, *args, **kwargs):
    """Run a blocking call in the thread-pool executor."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, partial(fn, *args, **kwargs))


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="kbchat API",
    description="Knowledge-base chatbots: ingestion, retrieval-grounded chat, voice, embedding",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KBChatError)
async def kbchat_error(request: Request, exc: KBChatError):
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
    logger.warning(f"[API] {request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class AccessRequest(BaseModel):
    token: Optional[str] = None
    domain: Optional[str] = None


class AccessResponse(BaseModel):
    allowed: bool
    chatbot_id: str
    domain: Optional[str] = None
    token_checked: bool


class ChatRequest(BaseModel):
    message: str
    state: Optional[ConversationState] = None
    attachment_text: Optional[str] = None
    token: Optional[str] = None
    domain: Optional[str] = None


class TurnResponse(BaseModel):
    state: ConversationState
    new_messages: list[TranscriptMessage]
    reply: Optional[TranscriptMessage] = None
    failed: bool = False


class VoiceTurnResponse(TurnResponse):
    transcript: str


class ContactRequest(BaseModel):
    state: ConversationState
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class SpeechRequest(BaseModel):
    message_id: str
    text: str
    session_id: Optional[str] = None


class SnippetResponse(BaseModel):
    snippet: str
    iframe_url: str


class KnowledgeBaseUpdate(BaseModel):
    name: str
    description: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _chatbot(chatbot_id: str) -> Chatbot:
    bot = _svc().store.get_chatbot(chatbot_id)
    if bot is None:
        raise HTTPException(status_code=404, detail=f"Chatbot {chatbot_id} not found")
    return bot


def _requester(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _authorize(request: Request, chatbot_id: str, token: Optional[str], domain: Optional[str]):
    return _svc().gate.authorize(
        chatbot_id, token=token, domain=domain, referrer=request.headers.get("referer")
    )


def _turn_response(result, **extra) -> dict:
    return {
        "state": result.state,
        "new_messages": result.new_messages,
        "reply": result.reply,
        "failed": result.failed,
        **extra,
    }


def _parse_state(raw: str) -> ConversationState:
    """Conversation state sent as a JSON form field."""
    try:
        return ConversationState.model_validate(orjson.loads(raw))
    except (orjson.JSONDecodeError, SchemaError) as exc:
        raise ValidationError(f"Malformed conversation state: {exc}") from exc


def _process_in_background(document: Document, data: bytes) -> None:
    try:
        _svc().ingestion.process(document, data)
    except KBChatError as exc:
        # process() has already marked the document failed
        logger.error(f"[API] Background ingestion of {document.id} failed: {exc}")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Return store type, feature switches and configured models."""
    svc = _svc()
    return {
        "status": "ok",
        "store": type(svc.store).__name__,
        "features": svc.settings.features(),
        "models": svc.settings.models.model_dump(),
        "top_k": svc.retriever.top_k,
    }


# --- Documents ---------------------------------------------------------------

@app.post("/api/documents", response_model=Document, status_code=202)
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user_id: str = Form(...),
    knowledge_base_id: Optional[str] = Form(None),
):
    """
    Store the file and create its Document in `processing` state, then
    extract, segment and embed it after the response has been sent.
    Poll GET /api/documents for the final status.
    """
    media_type = file.content_type or ""
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise ExtractionError(
            f"Unsupported file type {media_type or 'unknown'}. Only .txt and .pdf files are supported."
        )
    data = await file.read()
    if not data:
        raise ValidationError("Uploaded file is empty")

    document = await _run(
        _svc().ingestion.start,
        user_id,
        file.filename or "upload",
        data,
        media_type,
        knowledge_base_id=knowledge_base_id,
    )
    background_tasks.add_task(_process_in_background, document, data)
    logger.info(f"[API] Upload accepted | document={document.id} size={len(data)}")
    return document


@app.get("/api/documents", response_model=list[Document])
async def list_documents(
    user_id: str = Query(...),
    knowledge_base_id: Optional[str] = Query(None),
):
    return await _run(_svc().ingestion.list_documents, user_id, knowledge_base_id)


@app.delete("/api/documents/{document_id}", status_code=204)
async def delete_document(document_id: str):
    await _run(_svc().ingestion.delete_document, document_id)
    return Response(status_code=204)


@app.post("/api/documents/{document_id}/reprocess", response_model=Document)
async def reprocess_document(document_id: str):
    return await _run(_svc().ingestion.reprocess, document_id)


@app.post("/api/attachments")
async def extract_attachment(file: UploadFile = File(...)):
    """Text of a file attached in chat; pass it back as `attachment_text`."""
    data = await file.read()
    text = await _run(_svc().ingestion.extract_attachment, data, file.content_type or "")
    return {"filename": file.filename, "text": text}


# --- Knowledge bases -----------------------------------------------------------

@app.post("/api/knowledge-bases", response_model=KnowledgeBase, status_code=202)
async def create_knowledge_base(
    background_tasks: BackgroundTasks,
    user_id: str = Form(...),
    name: str = Form(...),
    description: Optional[str] = Form(None),
    files: Optional[list[UploadFile]] = File(None),
):
    """
    Create a knowledge base and ingest its first files after the response.
    POST /api/knowledge-bases/{id}/cancel aborts the uploads still running.
    """
    manager = _svc().knowledge_bases
    uploads = [
        KnowledgeBaseUpload(f.filename or "upload", await f.read(), f.content_type or "")
        for f in files or []
    ]
    kb = await _run(manager.create, user_id, name, description)
    if uploads:
        batch = manager.open_batch(kb.id)
        background_tasks.add_task(manager.add_documents, kb, uploads, batch)
    logger.info(f"[API] Knowledge base {kb.id} created | files={len(uploads)}")
    return kb


@app.get("/api/knowledge-bases", response_model=list[KnowledgeBase])
async def list_knowledge_bases(user_id: str = Query(...)):
    return await _run(_svc().knowledge_bases.list, user_id)


@app.get("/api/knowledge-bases/{knowledge_base_id}/documents", response_model=list[Document])
async def knowledge_base_documents(knowledge_base_id: str):
    return await _run(_svc().knowledge_bases.documents, knowledge_base_id)


@app.patch("/api/knowledge-bases/{knowledge_base_id}", response_model=KnowledgeBase)
async def rename_knowledge_base(knowledge_base_id: str, body: KnowledgeBaseUpdate):
    return await _run(
        _svc().knowledge_bases.rename, knowledge_base_id, body.name, body.description
    )


@app.post("/api/knowledge-bases/{knowledge_base_id}/cancel")
async def cancel_knowledge_base_uploads(knowledge_base_id: str):
    cancelled = _svc().knowledge_bases.cancel_uploads(knowledge_base_id)
    return {"knowledge_base_id": knowledge_base_id, "cancelled": cancelled}


@app.delete("/api/knowledge-bases/{knowledge_base_id}", status_code=204)
async def delete_knowledge_base(knowledge_base_id: str):
    await _run(_svc().knowledge_bases.delete, knowledge_base_id)
    return Response(status_code=204)


# --- Security gate & embedding ---------------------------------------------

@app.post("/api/chatbots/{chatbot_id}/access", response_model=AccessResponse)
async def check_access(chatbot_id: str, body: AccessRequest, request: Request):
    decision = await _run(_authorize, request, chatbot_id, body.token, body.domain)
    return AccessResponse(
        allowed=decision.allowed,
        chatbot_id=decision.chatbot_id,
        domain=decision.domain,
        token_checked=decision.token_checked,
    )


@app.get("/api/chatbots/{chatbot_id}/embed-snippet", response_model=SnippetResponse)
async def embed_snippet(chatbot_id: str, request: Request, domain: Optional[str] = Query(None)):
    """Loader snippet for a site; with `domain`, it carries that domain's token."""
    _chatbot(chatbot_id)
    token = None
    if domain:
        row = await _run(_svc().domains.get, chatbot_id, domain)
        if row is None:
            raise HTTPException(status_code=404, detail=f"Domain {domain} is not registered")
        token, domain = row.token, row.domain

    origin = str(request.base_url).rstrip("/")
    return SnippetResponse(
        snippet=render_embed_snippet(origin, chatbot_id, token, domain),
        iframe_url=build_iframe_url(origin, chatbot_id, token, domain),
    )


@app.get("/embed/chatbot.js", include_in_schema=False)
async def embed_script():
    return Response(content=render_embed_script(), media_type="application/javascript")


# --- Conversation ------------------------------------------------------------

@app.post("/api/chat/{chatbot_id}", response_model=TurnResponse)
async def chat(chatbot_id: str, body: ChatRequest, request: Request):
    """
    Run one turn.  A request without `state` starts a new conversation
    (seeded with the welcome message when the chatbot shows one).
    """
    svc = _svc()
    await _run(_authorize, request, chatbot_id, body.token, body.domain)
    bot = _chatbot(chatbot_id)
    state = body.state or svc.turns.start(bot)

    logger.info(f"[API] Chat | chatbot={chatbot_id} session={state.session_id} query={body.message[:80]!r}")
    result = await _run(
        svc.turns.handle,
        state,
        bot,
        body.message,
        attachment_text=body.attachment_text,
        **_requester(request),
    )
    return _turn_response(result)


@app.post("/api/chat/{chatbot_id}/voice", response_model=VoiceTurnResponse)
async def voice_chat(
    chatbot_id: str,
    request: Request,
    audio: UploadFile = File(...),
    state: Optional[str] = Form(None),
    token: Optional[str] = Form(None),
    domain: Optional[str] = Form(None),
):
    """Transcribe the recording and send the transcript as the user's message."""
    svc = _svc()
    await _run(_authorize, request, chatbot_id, token, domain)
    bot = _chatbot(chatbot_id)
    current = _parse_state(state) if state else svc.turns.start(bot)

    recording = RecordingSession(media_type=audio.content_type or "audio/webm")
    recording.add_chunk(await audio.read())
    blob = recording.finish()

    transcript = await _run(svc.transcriber.transcribe, blob)
    result = await _run(svc.turns.handle, current, bot, transcript, **_requester(request))
    return _turn_response(result, transcript=transcript)


@app.post("/api/chat/{chatbot_id}/contact")
async def capture_contact(chatbot_id: str, body: ContactRequest):
    _chatbot(chatbot_id)
    interaction = await _run(
        _svc().interactions.capture_contact,
        chatbot_id,
        body.state,
        name=body.name,
        email=body.email,
        phone=body.phone,
    )
    return {"id": interaction.id, "session_id": interaction.session_id}


@app.post("/api/speech")
async def speech(body: SpeechRequest):
    """Audio for one bot message; repeats within a session are served from cache."""
    clip = await _run(
        _svc().synthesizer.speak, body.message_id, body.text, session_id=body.session_id
    )
    return Response(content=clip.data, media_type=clip.media_type)
