from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from .channels import (
    ChatSender,
    HttpChatSender,
    HttpTextMessageSender,
    StubChatSender,
    StubTextMessageSender,
    TextMessageSender,
)
from .config import Settings, get_settings
from .dispatch import ReminderDispatchService
from .models import (
    DispatchResponse,
    HealthResponse,
    ModuleNotInstalledResponse,
    ReapResponse,
    ReminderCreateRequest,
    ReminderItem,
    ReminderListResponse,
    ReminderState,
)
from .reminder_store import (
    InMemoryReminderStore,
    ReminderModuleNotInstalledError,
    ReminderNotFoundError,
    ReminderRecord,
    ReminderStore,
    create_reminder_store,
)
from .session_tokens import (
    MissingTenantError,
    PermissionDeniedError,
    SessionPrincipal,
    SessionTokenError,
    decode_session_token,
    require_dispatch_principal,
)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["reminders"])


def _create_chat_sender(settings: Settings) -> ChatSender:
    if settings.channel_sender_type == "stub":
        return StubChatSender()
    return HttpChatSender(timeout_seconds=settings.channel_timeout_seconds)


def _create_text_sender(settings: Settings) -> TextMessageSender:
    if settings.channel_sender_type == "stub":
        return StubTextMessageSender()
    return HttpTextMessageSender(
        graph_base=settings.whatsapp_graph_base,
        graph_version=settings.whatsapp_graph_version,
        timeout_seconds=settings.channel_timeout_seconds,
    )


def _create_dispatch_service(settings: Settings) -> ReminderDispatchService:
    return ReminderDispatchService(
        store=reminder_store,
        chat_sender=chat_sender,
        text_sender=text_sender,
        settings=settings,
    )


reminder_store: ReminderStore = create_reminder_store(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
chat_sender: ChatSender = _create_chat_sender(_settings)
text_sender: TextMessageSender = _create_text_sender(_settings)
dispatch_service: ReminderDispatchService = _create_dispatch_service(_settings)


def reset_runtime_state_for_tests() -> None:
    if isinstance(reminder_store, InMemoryReminderStore):
        reminder_store.reset()


def _require_principal(request: Request) -> SessionPrincipal:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "session required")
    try:
        return decode_session_token(token, secret=_settings.session_token_secret)
    except MissingTenantError as exc:
        raise HTTPException(400, str(exc)) from exc
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _require_admin(request: Request) -> SessionPrincipal:
    principal = _require_principal(request)
    try:
        return require_dispatch_principal(principal)
    except PermissionDeniedError as exc:
        raise HTTPException(403, str(exc)) from exc


def _to_item(record: ReminderRecord) -> ReminderItem:
    return ReminderItem(
        reminder_id=record.reminder_id,
        tenant_id=record.tenant_id,
        title=record.title,
        message=record.message,
        scheduled_at=record.scheduled_at,
        client_id=record.client_id,
        task_id=record.task_id,
        state=record.state,
        attempt_count=record.attempt_count,
        last_error=record.last_error,
        created_at=record.created_at,
        claimed_at=record.claimed_at,
        sent_at=record.sent_at,
    )


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse()


@router.post("/jobs/dispatch", response_model=DispatchResponse | ModuleNotInstalledResponse)
def dispatch_due_reminders(request: Request, limit: int | None = None) -> DispatchResponse | ModuleNotInstalledResponse:
    principal = _require_admin(request)
    return dispatch_service.dispatch_due(principal.tenant_id, limit=limit)


@router.post("/jobs/reap-stale", response_model=ReapResponse | ModuleNotInstalledResponse)
def reap_stale_claims(request: Request) -> ReapResponse | ModuleNotInstalledResponse:
    principal = _require_admin(request)
    return dispatch_service.reap_stale_claims(principal.tenant_id)


@router.post("/reminders", response_model=ReminderItem, status_code=status.HTTP_201_CREATED)
def create_reminder(payload: ReminderCreateRequest, request: Request) -> ReminderItem:
    principal = _require_principal(request)
    try:
        record = dispatch_service.create_reminder(principal.tenant_id, payload)
    except ReminderModuleNotInstalledError as exc:
        raise HTTPException(404, "reminder module is not installed") from exc
    return _to_item(record)


@router.get("/reminders", response_model=ReminderListResponse)
def list_reminders(request: Request, state: ReminderState | None = None) -> ReminderListResponse:
    principal = _require_principal(request)
    try:
        records = dispatch_service.list_reminders(principal.tenant_id, state=state)
    except ReminderModuleNotInstalledError as exc:
        raise HTTPException(404, "reminder module is not installed") from exc
    return ReminderListResponse(items=[_to_item(record) for record in records])


@router.get("/reminders/{reminder_id}", response_model=ReminderItem)
def get_reminder(reminder_id: int, request: Request) -> ReminderItem:
    principal = _require_principal(request)
    try:
        record = dispatch_service.get_reminder(principal.tenant_id, reminder_id)
    except ReminderModuleNotInstalledError as exc:
        raise HTTPException(404, "reminder module is not installed") from exc
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    return _to_item(record)
