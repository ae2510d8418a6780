"""Webhook delivery worker.

Drains a tenant's outbox one row at a time. Each row is claimed in its own
short transaction, delivered outside any transaction, and its outcome
recorded in a second transaction, so a slow endpoint never holds database
locks and one failing subscriber never stops the drain.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.audit import record_audit_log
from eventrelay.backoff import BackoffPolicy
from eventrelay.config import Settings, get_settings
from eventrelay.crypto import EncryptionError, SecretVault
from eventrelay.db.enums import AuditAction, AuditSeverity, OutboxStatus
from eventrelay.db.models import BackgroundJob, utcnow
from eventrelay.db.session import tenant_session
from eventrelay.metrics.definitions import (
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
)
from eventrelay.webhook.outbox import (
    ClaimedDelivery,
    claim_next_entry,
    enqueue_delivery_trigger,
    mark_delivered,
    mark_failed,
    next_pending_retry_at,
    record_delivery_attempt,
)
from eventrelay.webhook.signing import build_signature_headers, serialize_payload
from eventrelay.webhook.url_validator import (
    URLValidationError,
    create_ssrf_safe_client,
    validate_webhook_url_async,
)

logger = logging.getLogger(__name__)

USER_AGENT = "EventRelay-Webhook/1.0"


@dataclass
class SendResult:
    """Outcome of one HTTP delivery attempt."""

    success: bool
    status_code: int | None = None
    response_headers: dict[str, str] | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int = 0
    permanent: bool = False


async def send_webhook(
    url: str,
    body: str,
    headers: dict[str, str],
    client: httpx.AsyncClient,
    request_timeout: float = 30.0,
    response_body_limit: int = 10000,
) -> SendResult:
    """POST a serialized payload.

    Redirects are never followed; a 3xx response counts as a failed attempt.
    Transport errors are returned as a failed result, not raised. A
    connection refused by the SSRF-safe transport is marked permanent.

    Args:
        url: Webhook URL
        body: Serialized JSON body, exactly as signed
        headers: Request headers including the signature
        client: HTTP client to send with
        request_timeout: Request timeout in seconds
        response_body_limit: Maximum number of response body characters kept

    Returns:
        SendResult describing the attempt
    """
    all_headers = {"User-Agent": USER_AGENT, **headers}
    start_time = time.perf_counter()

    def elapsed_ms() -> int:
        return int((time.perf_counter() - start_time) * 1000)

    try:
        response = await client.post(
            url,
            content=body.encode("utf-8"),
            headers=all_headers,
            timeout=request_timeout,
            follow_redirects=False,
        )
    except httpx.TimeoutException:
        return SendResult(success=False, error="Request timed out", duration_ms=elapsed_ms())
    except httpx.ConnectError as e:
        return SendResult(success=False, error=f"Connection error: {e}", duration_ms=elapsed_ms())
    except httpx.HTTPError as e:
        return SendResult(success=False, error=f"HTTP error: {e}", duration_ms=elapsed_ms())
    except URLValidationError as e:
        # Raised by the SSRF-safe transport when DNS changed since validation
        return SendResult(
            success=False, error=f"URL blocked: {e}", duration_ms=elapsed_ms(), permanent=True
        )

    duration_ms = elapsed_ms()
    response_headers = dict(response.headers)

    if 300 <= response.status_code < 400:
        return SendResult(
            success=False,
            status_code=response.status_code,
            response_headers=response_headers,
            error=f"Redirect not allowed (HTTP {response.status_code})",
            duration_ms=duration_ms,
        )

    response_body = response.text[:response_body_limit]
    if response.is_success:
        return SendResult(
            success=True,
            status_code=response.status_code,
            response_headers=response_headers,
            response_body=response_body,
            duration_ms=duration_ms,
        )
    return SendResult(
        success=False,
        status_code=response.status_code,
        response_headers=response_headers,
        response_body=response_body,
        error=f"HTTP {response.status_code}",
        duration_ms=duration_ms,
    )


class DeliveryWorker:
    """Delivers a tenant's due outbox rows and drives their retry state machine."""

    def __init__(
        self,
        settings: Settings | None = None,
        vault: SecretVault | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.vault = vault or SecretVault.from_settings(self.settings)
        self.session_factory = session_factory
        self.backoff = BackoffPolicy.from_settings(self.settings)
        self.worker_id = f"{self.settings.instance_id}:delivery:{uuid.uuid4().hex[:8]}"
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._http_client_lock = asyncio.Lock()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client, shared by every delivery of this worker."""
        if self._http_client is None:
            async with self._http_client_lock:
                if self._http_client is None:
                    self._http_client = create_ssrf_safe_client(
                        timeout=self.settings.webhook_timeout,
                        allowed_internal_domains=self.settings.webhook_allowed_internal_domains,
                    )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this worker created it."""
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def drain_tenant(self, tenant_id: uuid.UUID, max_entries: int | None = None) -> int:
        """Deliver due outbox rows of a tenant until none are left.

        Args:
            tenant_id: Tenant to drain
            max_entries: Stop after this many rows (no limit if None)

        Returns:
            Number of rows processed
        """
        processed = 0
        while max_entries is None or processed < max_entries:
            async with tenant_session(tenant_id, self.session_factory) as session:
                claim = await claim_next_entry(session, tenant_id, self.worker_id)
            if claim is None:
                break

            try:
                await self.process_claim(claim)
            except Exception as e:
                logger.exception(f"Unexpected error delivering outbox entry {claim.outbox_id}")
                try:
                    await self._record_outcome(claim, error=f"Unexpected error: {e}")
                except Exception:
                    logger.exception(f"Could not record failure of outbox entry {claim.outbox_id}")
            processed += 1

        if processed:
            logger.info(f"Drained {processed} outbox entries for tenant {tenant_id}")
        return processed

    async def process_claim(self, claim: ClaimedDelivery) -> OutboxStatus | None:
        """Run one delivery attempt for a claimed row and record the outcome.

        Returns:
            The row's new status, or None if the lease was lost meanwhile.
        """
        logger.debug(f"Delivering {claim.event_id} (attempt {claim.attempt_number})")

        try:
            secret = self.vault.decrypt(claim.encrypted_secret)
        except EncryptionError as e:
            logger.error(f"Cannot decrypt secret of subscription {claim.subscription_id}: {e}")
            return await self._record_outcome(
                claim, error=f"Failed to decrypt webhook secret: {e}", permanent=True
            )

        try:
            await validate_webhook_url_async(
                claim.url,
                allow_http=self.settings.webhook_allow_http,
                allowed_internal_domains=self.settings.webhook_allowed_internal_domains,
            )
        except URLValidationError as e:
            logger.warning(f"Blocked webhook for subscription {claim.subscription_id}: {e}")
            return await self._record_outcome(claim, error=f"URL blocked: {e}", permanent=True)

        body = serialize_payload(claim.payload)
        headers = build_signature_headers(secret, claim.event_id, body)

        result = await send_webhook(
            claim.url,
            body,
            headers,
            client=await self._get_http_client(),
            request_timeout=self.settings.webhook_timeout,
            response_body_limit=self.settings.webhook_response_body_limit,
        )
        WEBHOOK_DELIVERY_DURATION.observe(result.duration_ms / 1000)
        if result.permanent:
            logger.warning(
                f"Blocked webhook for subscription {claim.subscription_id}: {result.error}"
            )

        return await self._record_outcome(claim, result=result, request_headers=headers)

    async def _record_outcome(
        self,
        claim: ClaimedDelivery,
        *,
        result: SendResult | None = None,
        request_headers: dict[str, str] | None = None,
        error: str | None = None,
        permanent: bool = False,
    ) -> OutboxStatus | None:
        """Append the delivery record and advance the row in one transaction."""
        result = result or SendResult(success=False, error=error, permanent=permanent)

        async with tenant_session(claim.tenant_id, self.session_factory) as session:
            await record_delivery_attempt(
                session,
                claim,
                success=result.success,
                request_headers=request_headers,
                response_status=result.status_code,
                response_headers=result.response_headers,
                response_body=result.response_body,
                error=result.error,
                duration_ms=result.duration_ms,
            )

            if result.success:
                status = OutboxStatus.DELIVERED if await mark_delivered(session, claim) else None
            else:
                status = await mark_failed(
                    session,
                    claim,
                    result.error or "Unknown error",
                    max_attempts=self.settings.webhook_max_attempts,
                    backoff=self.backoff,
                    permanent=result.permanent,
                )

            if status == OutboxStatus.DEAD_LETTER:
                await record_audit_log(
                    session,
                    claim.tenant_id,
                    AuditAction.WEBHOOK_FAILED,
                    severity=AuditSeverity.ERROR,
                    resource_type="webhook_outbox",
                    resource_id=claim.outbox_id,
                    details={
                        "event_id": claim.event_id,
                        "subscription_id": str(claim.subscription_id),
                        "attempts": max(claim.attempt_number, self.settings.webhook_max_attempts),
                        "error": result.error,
                    },
                )

        if status == OutboxStatus.DELIVERED:
            WEBHOOK_DELIVERIES_TOTAL.labels(status="delivered").inc()
        elif status == OutboxStatus.PENDING:
            WEBHOOK_DELIVERIES_TOTAL.labels(status="retry").inc()
        elif status == OutboxStatus.DEAD_LETTER:
            WEBHOOK_DELIVERIES_TOTAL.labels(status="dead_letter").inc()
        return status

    async def schedule_next_drain(self, tenant_id: uuid.UUID) -> BackgroundJob | None:
        """Queue a trigger for the tenant's earliest pending retry, if any."""
        async with tenant_session(tenant_id, self.session_factory) as session:
            next_at = await next_pending_retry_at(session, tenant_id)
            if next_at is None:
                return None
            return await enqueue_delivery_trigger(
                session,
                tenant_id,
                run_after=max(next_at, utcnow()),
                dedupe=True,
                settings=self.settings,
            )

    async def handle_job(self, job: BackgroundJob) -> dict[str, Any]:
        """Job handler for ``webhook_deliver`` triggers."""
        processed = await self.drain_tenant(job.tenant_id)
        trigger = await self.schedule_next_drain(job.tenant_id)
        return {
            "processed": processed,
            "next_run_at": trigger.run_after.isoformat() if trigger is not None else None,
        }
