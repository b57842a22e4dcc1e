from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .channels import ChannelSendResult, ChatSender, TextMessageSender, mask_phone
from .config import Settings
from .context import NotificationContext, compose_text, display_zone, resolve_context
from .models import (
    DispatchJobResult,
    DispatchResponse,
    ModuleNotInstalledResponse,
    ReapResponse,
    ReminderCreateRequest,
)
from .reminder_store import (
    ClaimedReminder,
    ReminderModuleNotInstalledError,
    ReminderRecord,
    ReminderStore,
)
from .schema import REMINDERS_TABLE, CachedSchemaCatalog, SchemaCapabilities, describe_schema

logger = logging.getLogger(__name__)

NO_CHANNEL_REASON = "no channel configured/usable"
OUTCOME_WRITE_FAILED = "outcome write failed"
MAX_RETRY_DELAY_SECONDS = 3600


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class _Delivery:
    delivered: bool
    channel: str | None
    error: str | None
    attempted: bool


class ReminderDispatchService:
    """Runs one bounded dispatch cycle per call for a single tenant."""

    def __init__(
        self,
        *,
        store: ReminderStore,
        chat_sender: ChatSender,
        text_sender: TextMessageSender,
        settings: Settings,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._chat_sender = chat_sender
        self._text_sender = text_sender
        self._settings = settings
        self._monotonic = monotonic
        self._zone = display_zone(settings.display_timezone)

    def describe(self) -> SchemaCapabilities:
        return describe_schema(CachedSchemaCatalog(self._store.schema_catalog()))

    @staticmethod
    def _tenant(tenant_id: str | None) -> str:
        normalized = "" if tenant_id is None else str(tenant_id).strip()
        if not normalized:
            raise ValueError("tenant_id is required")
        return normalized

    def dispatch_due(
        self,
        tenant_id: str,
        *,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> DispatchResponse | ModuleNotInstalledResponse:
        tenant = self._tenant(tenant_id)
        started = self._monotonic()
        run_at = _coerce_utc(now) if now is not None else _now_utc()
        effective_limit = self._settings.clamp_limit(limit)

        capabilities = self.describe()
        if not capabilities.installed:
            logger.warning("reminder dispatch skipped for tenant %s: %s not installed", tenant, REMINDERS_TABLE)
            return ModuleNotInstalledResponse()

        reaped = 0
        if self._settings.reap_stale_claims_on_dispatch and capabilities.tracks_claims:
            reaped = self._store.release_stale_claims(
                tenant,
                older_than=run_at - timedelta(minutes=self._settings.stale_claim_minutes),
                capabilities=capabilities,
            )
            if reaped:
                logger.warning("released %s stale reminder claims for tenant %s", reaped, tenant)

        # Claim errors propagate; nothing has been delivered yet.
        claimed = self._store.claim_due(tenant, limit=effective_limit, now=run_at, capabilities=capabilities)

        processed = self._process_batch(claimed, capabilities=capabilities, run_at=run_at, started=started)
        results = [result for result in processed if result is not None]
        deferred = len(claimed) - len(results)
        if deferred:
            logger.warning(
                "dispatch deadline of %ss reached for tenant %s; %s reminders left claimed",
                self._settings.dispatch_deadline_seconds,
                tenant,
                deferred,
            )

        succeeded = sum(1 for result in results if result.outcome == "sent")
        requeued = sum(1 for result in results if result.outcome == "requeued")
        failed = len(results) - succeeded
        logger.info(
            "reminder dispatch tenant=%s limit=%s claimed=%s succeeded=%s failed=%s requeued=%s deferred=%s",
            tenant,
            effective_limit,
            len(claimed),
            succeeded,
            failed,
            requeued,
            deferred,
        )
        return DispatchResponse(
            succeeded=succeeded,
            failed=failed,
            total_claimed=len(claimed),
            limit=effective_limit,
            deferred=deferred,
            requeued=requeued,
            reaped=reaped,
            run_at=run_at,
            results=results,
        )

    def _deadline_passed(self, started: float) -> bool:
        deadline = self._settings.dispatch_deadline_seconds
        if deadline <= 0:
            return False
        return self._monotonic() - started >= deadline

    def _process_batch(
        self,
        claimed: list[ClaimedReminder],
        *,
        capabilities: SchemaCapabilities,
        run_at: datetime,
        started: float,
    ) -> list[DispatchJobResult | None]:
        def _run(job: ClaimedReminder) -> DispatchJobResult | None:
            if self._deadline_passed(started):
                return None
            return self._process_job(job, capabilities=capabilities, run_at=run_at)

        workers = min(self._settings.effective_concurrency(), len(claimed))
        if workers <= 1:
            results: list[DispatchJobResult | None] = []
            for index, job in enumerate(claimed):
                result = _run(job)
                if result is None:
                    results.extend([None] * (len(claimed) - index))
                    break
                results.append(result)
            return results

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reminder-dispatch") as pool:
            return list(pool.map(_run, claimed))

    def _process_job(
        self,
        job: ClaimedReminder,
        *,
        capabilities: SchemaCapabilities,
        run_at: datetime,
    ) -> DispatchJobResult:
        try:
            context = resolve_context(job, zone=self._zone)
        except Exception:  # noqa: BLE001
            logger.exception("context resolution failed for reminder %s", job.reminder_id)
            context = None

        delivery = self._deliver(context) if context is not None else _Delivery(False, None, NO_CHANNEL_REASON, False)

        try:
            if delivery.delivered:
                self._store.mark_sent(
                    job.reminder_id,
                    tenant_id=job.tenant_id,
                    sent_at=_now_utc(),
                    capabilities=capabilities,
                )
                logger.debug("reminder %s sent via %s", job.reminder_id, delivery.channel)
                return DispatchJobResult(reminder_id=job.reminder_id, outcome="sent", channel=delivery.channel)

            error = delivery.error or NO_CHANNEL_REASON
            requeue_at = self._requeue_at(job, capabilities=capabilities, run_at=run_at) if delivery.attempted else None
            self._store.mark_failed(
                job.reminder_id,
                tenant_id=job.tenant_id,
                error=error,
                capabilities=capabilities,
                requeue_at=requeue_at,
            )
        except Exception:  # noqa: BLE001
            logger.exception("failed to record outcome for reminder %s", job.reminder_id)
            return DispatchJobResult(
                reminder_id=job.reminder_id,
                outcome="failed",
                channel=delivery.channel,
                error=OUTCOME_WRITE_FAILED,
            )

        logger.debug("reminder %s failed: %s", job.reminder_id, error)
        return DispatchJobResult(
            reminder_id=job.reminder_id,
            outcome="requeued" if requeue_at is not None else "failed",
            channel=delivery.channel,
            error=error,
            next_attempt_at=requeue_at,
        )

    def _deliver(self, context: NotificationContext) -> _Delivery:
        text = compose_text(context)
        errors: list[str] = []
        skipped: list[str] = []
        last_channel: str | None = None

        if context.chat_webhook_url:
            if context.chat_usable:
                result = self._send_chat(context.chat_webhook_url, text)
                if result.delivered:
                    return _Delivery(True, "chat", None, True)
                errors.append(result.error_message or f"chat: {result.error_code}")
                last_channel = "chat"
            else:
                logger.warning("reminder %s: chat webhook rejected by validation", context.reminder_id)
                skipped.append("chat: invalid_webhook")

        if context.text_token and context.text_sender_id:
            if context.text_usable:
                result = self._send_text(context, text)
                if result.delivered:
                    return _Delivery(True, "text", None, True)
                errors.append(result.error_message or f"text: {result.error_code}")
                last_channel = "text"
            else:
                logger.debug("reminder %s: no usable destination phone", context.reminder_id)
                skipped.append("text: phone_unusable")

        if not errors:
            # Validation rejects count as configuration absence and are never requeued.
            reason = NO_CHANNEL_REASON
            if skipped:
                reason = f"{NO_CHANNEL_REASON} ({'; '.join(skipped)})"
            return _Delivery(False, None, reason, False)
        return _Delivery(False, last_channel, "; ".join(skipped + errors), True)

    def _send_chat(self, webhook_url: str, text: str) -> ChannelSendResult:
        try:
            return self._chat_sender.send(webhook_url, text)
        except Exception as exc:  # noqa: BLE001
            logger.exception("chat sender raised")
            return ChannelSendResult(
                channel="chat",
                delivered=False,
                attempted_at=_now_utc(),
                error_code="sender_error",
                error_message=f"chat: {exc}",
            )

    def _send_text(self, context: NotificationContext, text: str) -> ChannelSendResult:
        try:
            return self._text_sender.send(
                token=context.text_token or "",
                sender_id=context.text_sender_id or "",
                phone=context.destination_phone,
                text=text,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("text sender raised for %s", mask_phone(context.destination_phone))
            return ChannelSendResult(
                channel="text",
                delivered=False,
                attempted_at=_now_utc(),
                error_code="sender_error",
                error_message=f"text: {exc}",
            )

    def _requeue_at(
        self,
        job: ClaimedReminder,
        *,
        capabilities: SchemaCapabilities,
        run_at: datetime,
    ) -> datetime | None:
        max_attempts = self._settings.reminder_max_attempts
        if max_attempts <= 1 or not capabilities.tracks_attempts:
            return None
        attempts = job.attempt_count + 1
        if attempts >= max_attempts:
            return None
        delay = min(self._settings.reminder_retry_base_seconds * (2 ** (attempts - 1)), MAX_RETRY_DELAY_SECONDS)
        return run_at + timedelta(seconds=delay)

    def reap_stale_claims(
        self,
        tenant_id: str,
        *,
        now: datetime | None = None,
    ) -> ReapResponse | ModuleNotInstalledResponse:
        tenant = self._tenant(tenant_id)
        reference = _coerce_utc(now) if now is not None else _now_utc()
        older_than = reference - timedelta(minutes=self._settings.stale_claim_minutes)
        capabilities = self.describe()
        if not capabilities.installed:
            return ModuleNotInstalledResponse()
        if not capabilities.tracks_claims:
            logger.warning("stale claim reaper unavailable for tenant %s: no claimed_at column", tenant)
            return ReapResponse(released=0, older_than=older_than, supported=False)
        released = self._store.release_stale_claims(tenant, older_than=older_than, capabilities=capabilities)
        if released:
            logger.warning("released %s stale reminder claims for tenant %s", released, tenant)
        return ReapResponse(released=released, older_than=older_than)

    def _installed_capabilities(self) -> SchemaCapabilities:
        capabilities = self.describe()
        if not capabilities.installed:
            raise ReminderModuleNotInstalledError(REMINDERS_TABLE)
        return capabilities

    def create_reminder(self, tenant_id: str, payload: ReminderCreateRequest) -> ReminderRecord:
        capabilities = self._installed_capabilities()
        return self._store.create_reminder(
            self._tenant(tenant_id),
            payload,
            now=_now_utc(),
            capabilities=capabilities,
        )

    def list_reminders(self, tenant_id: str, *, state: str | None = None) -> list[ReminderRecord]:
        capabilities = self._installed_capabilities()
        return self._store.list_reminders(self._tenant(tenant_id), capabilities=capabilities, state=state)

    def get_reminder(self, tenant_id: str, reminder_id: int) -> ReminderRecord:
        capabilities = self._installed_capabilities()
        return self._store.get_reminder(self._tenant(tenant_id), reminder_id, capabilities=capabilities)
