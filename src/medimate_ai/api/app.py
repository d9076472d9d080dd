"""
FastAPI Application Module

JSON API behind the MediMate web client. Each browser opens a client
context and keeps its bearer token; the context mirrors that browser's
session, chat list, open chats and profile against the document store.

Key Features:
- Verification gating on every protected route
- Optimistic chat sends answered by the AI service
- Structured logging, Prometheus metrics and OpenTelemetry tracing

Provider failures are translated into the application's error taxonomy
before they reach a response.
"""

import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings
from ..domain.errors import ChatNotFound, MediMateError
from ..domain.models import ChatMessage, ChatSession, Identity
from ..services.backend import BackendClient, create_backend
from ..services.session import View
from .context import ClientContext, ClientContextRegistry

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
MESSAGES = Counter("chat_messages_total", "Chat messages answered", registry=CUSTOM_REGISTRY)

logger = get_logger()

security = HTTPBearer(auto_error=False)


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: str


class ChatRename(BaseModel):
    title: str


class SessionView(BaseModel):
    state: str
    identity: Optional[Identity] = None


class SendResult(BaseModel):
    reply: Optional[ChatMessage] = None
    messages: List[ChatMessage]


class ViewDenied(Exception):
    """Requested view is not reachable in the current session state."""

    def __init__(self, requested: View, redirect: View) -> None:
        super().__init__(redirect.value)
        self.requested = requested
        self.redirect = redirect


def get_backend(request: Request) -> BackendClient:
    """Returns the backend client created at startup"""
    return request.app.state.backend


def get_context(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> ClientContext:
    """Looks up the client context for the bearer token"""
    contexts: ClientContextRegistry = request.app.state.contexts
    context = None
    if creds is not None and creds.scheme.lower() == "bearer":
        context = contexts.get(creds.credentials)
    if context is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return context


def require_view(view: View):
    """Dependency allowing the route only when ``view`` resolves to itself"""

    def dependency(context: ClientContext = Depends(get_context)) -> ClientContext:
        resolved = context.session.view_for(view)
        if resolved != view:
            raise ViewDenied(view, resolved)
        return context

    return dependency


def session_view(context: ClientContext) -> SessionView:
    return SessionView(state=context.session.state.value, identity=context.session.identity)


def create_app(
    backend: Optional[BackendClient] = None,
    contexts: Optional[ClientContextRegistry] = None,
) -> FastAPI:
    """Builds the application around an explicitly provided backend client"""
    settings = Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        logger.info("application_startup_complete", answers_enabled=app.state.backend.answers is not None)
        yield
        app.state.contexts.close_all()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="MediMate AI API",
        description="Medical assistant chat backed by a document store and an AI answer service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.backend = backend or create_backend(settings)
    if contexts is None:
        contexts = ClientContextRegistry(settings.max_client_contexts, settings.client_idle_seconds)
    app.state.contexts = contexts

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests"""
        REQUESTS.inc()
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        if response.status_code >= 500:
            ERRORS.inc()
        return response

    @app.exception_handler(MediMateError)
    async def medimate_error_handler(request: Request, exc: MediMateError) -> JSONResponse:
        logger.info("request_rejected", path=request.url.path, code=exc.code, field=exc.field)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(ViewDenied)
    async def view_denied_handler(request: Request, exc: ViewDenied) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={"code": "view_denied", "view": exc.requested.value, "redirect": exc.redirect.value},
        )

    @app.post("/sessions", status_code=201)
    async def open_session(request: Request, backend: BackendClient = Depends(get_backend)) -> Dict[str, str]:
        """Opens a client context and returns its bearer token"""
        token = secrets.token_urlsafe(32)
        context = ClientContext(token, backend)
        await context.start()
        request.app.state.contexts.add(context)
        logger.info("client_context_opened", contexts=len(request.app.state.contexts))
        return {"token": token}

    @app.delete("/sessions", status_code=204)
    async def close_session(request: Request, context: ClientContext = Depends(get_context)) -> Response:
        """Drops the client context and all of its live subscriptions"""
        context.close()
        request.app.state.contexts.pop(context.token)
        return Response(status_code=204)

    @app.post("/auth/sign-up", response_model=SessionView)
    async def sign_up(
        payload: Dict[str, Any] = Body(...),
        context: ClientContext = Depends(get_context),
    ) -> SessionView:
        await context.accounts.sign_up(payload)
        return session_view(context)

    @app.post("/auth/sign-in", response_model=SessionView)
    async def sign_in(
        payload: Dict[str, Any] = Body(...),
        context: ClientContext = Depends(get_context),
    ) -> SessionView:
        await context.accounts.sign_in(payload)
        return session_view(context)

    @app.post("/auth/federated", response_model=SessionView)
    async def sign_in_federated(context: ClientContext = Depends(get_context)) -> SessionView:
        await context.accounts.sign_in_with_federated_provider()
        return session_view(context)

    @app.post("/auth/sign-out", response_model=SessionView)
    async def sign_out(context: ClientContext = Depends(get_context)) -> SessionView:
        await context.session.sign_out()
        return session_view(context)

    @app.get("/me", response_model=SessionView)
    async def me(context: ClientContext = Depends(get_context)) -> SessionView:
        return session_view(context)

    @app.get("/views/{view}")
    async def resolve(view: View, context: ClientContext = Depends(get_context)) -> Dict[str, str]:
        """Tells the client which view to render for a requested one"""
        return {"requested": view.value, "view": context.session.view_for(view).value}

    @app.post("/verification/resend", status_code=202)
    async def resend_verification(
        context: ClientContext = Depends(require_view(View.VERIFICATION_GATE)),
    ) -> Dict[str, bool]:
        await context.session.resend_verification()
        return {"sent": True}

    @app.post("/verification/check")
    async def check_verification(
        context: ClientContext = Depends(require_view(View.VERIFICATION_GATE)),
    ) -> Dict[str, Any]:
        verified = await context.session.check_verification()
        return {"verified": verified, "state": context.session.state.value}

    @app.get("/chats", response_model=List[ChatSession])
    async def list_chats(context: ClientContext = Depends(require_view(View.HISTORY))) -> List[ChatSession]:
        """Gets the user's chats, newest first"""
        chat_list = context.chats()
        if chat_list.error:
            raise MediMateError(chat_list.error)
        return chat_list.sessions

    @app.post("/chats", status_code=201)
    async def create_chat(context: ClientContext = Depends(require_view(View.HOME))) -> Dict[str, str]:
        """Starts a new chat; the client navigates to the returned id"""
        chat_id = await context.chats().create()
        return {"id": chat_id}

    @app.patch("/chats/{chat_id}", status_code=204)
    async def rename_chat(
        chat_id: str,
        body: ChatRename,
        context: ClientContext = Depends(require_view(View.HOME)),
    ) -> Response:
        await context.chats().rename(chat_id, body.title)
        return Response(status_code=204)

    @app.delete("/chats/{chat_id}")
    async def delete_chat(
        chat_id: str,
        active: Optional[str] = None,
        context: ClientContext = Depends(require_view(View.HOME)),
    ) -> Dict[str, bool]:
        navigate_away = await context.chats().delete(chat_id, active_chat_id=active)
        return {"navigate_away": navigate_away}

    @app.get("/chats/{chat_id}", response_model=ChatSession)
    async def get_chat(
        chat_id: str,
        context: ClientContext = Depends(require_view(View.CHAT)),
    ) -> ChatSession:
        """Retrieves a chat with its full transcript"""
        transcript = context.transcript(chat_id)
        if transcript.not_found or transcript.session is None:
            raise ChatNotFound()
        return transcript.session

    @app.post("/chats/{chat_id}/messages", response_model=SendResult)
    async def send_message(
        chat_id: str,
        message: MessageCreate,
        context: ClientContext = Depends(require_view(View.CHAT)),
    ) -> SendResult:
        """
        Sends the user's question and returns the assistant's reply.
        A blank message or one sent while another is in flight is ignored.
        """
        transcript = context.transcript(chat_id)
        if transcript.not_found:
            raise ChatNotFound()
        reply = await transcript.send(message.content)
        if reply is not None:
            MESSAGES.inc()
        return SendResult(reply=reply, messages=transcript.messages)

    @app.get("/profile")
    async def get_profile(context: ClientContext = Depends(require_view(View.SETTINGS))) -> Dict[str, Any]:
        profile = await context.profile.load()
        return {"profile": profile.model_dump(), "warning": context.profile.load_error}

    @app.patch("/profile")
    async def save_profile(
        payload: Dict[str, Any] = Body(...),
        context: ClientContext = Depends(require_view(View.SETTINGS)),
    ) -> Dict[str, Any]:
        result = await context.profile.save(payload)
        return {
            "updated_fields": result.updated_fields,
            "password_changed": result.password_changed,
            "profile": context.profile.profile.model_dump() if context.profile.profile else None,
        }

    @app.post("/profile/picture")
    async def upload_picture(
        request: Request,
        context: ClientContext = Depends(require_view(View.SETTINGS)),
    ) -> Dict[str, Any]:
        """Takes the raw image as the request body"""
        data = await request.body()
        content_type = request.headers.get("content-type", "")
        url = await context.profile.upload_picture(data, content_type)
        if url is None:
            raise HTTPException(status_code=409, detail="An upload is already in progress")
        return {"photo_url": url, "progress": context.profile.upload_progress}

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
