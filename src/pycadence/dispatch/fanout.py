"""Dispatch fan-out: send one piece of content to many recipients.

Per recipient the sequence is always:

    record_attempt  ->  render  ->  send  ->  complete_attempt

record_attempt is the idempotence gate. It refuses to open a new attempt
while a non-FAILED record exists for (run_id, recipient_id), so rerunning
a run (after a crash, a pause or a run-level retry) never sends twice to
a recipient that already got the message. An attempt left PENDING by a
crash counts as "maybe sent" and is not retried.

Failures are isolated per recipient: a render or transport error is
recorded as FAILED and the run goes on. Only PersistenceError escapes,
because a run that cannot write its ledger must stop.

Concurrency is bounded by one asyncio.Semaphore per run; every batch is
settled with asyncio.gather(return_exceptions=True) before the schedule
is re-read for pause/cancel. A throttle_delay keeps the slot busy after
each send, capping the rate at concurrency_limit sends per delay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pycadence.dispatch.interfaces import (
    ContentRenderer,
    OutboundTransport,
    Recipient,
    RecipientDirectory,
)
from pycadence.errors import RecipientResolutionError, RetryableError, TransportError
from pycadence.models import AttemptOutcome, RunSummary, ScheduleDefinition, ScheduleStatus
from pycadence.storage.base import CampaignStore, PersistenceError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of dispatching to one recipient."""

    recipient_id: str
    outcome: AttemptOutcome
    error: str | None = None
    retryable: bool = False
    """For FAILED: whether trying again later may succeed."""
    suppressed: bool = False
    """The recipient is unknown to the directory or excluded by status."""
    provider_message_id: str | None = None


class Dispatcher:
    """Sends runs and single workflow actions through the transport.

    Example:
        ```python
        dispatcher = Dispatcher(store, directory, renderer, transport)
        summary = await dispatcher.dispatch_run(schedule, run_id="weekly@20250106T090000Z")
        print(summary.to_dict())
        ```
    """

    def __init__(
        self,
        store: CampaignStore,
        directory: RecipientDirectory,
        renderer: ContentRenderer,
        transport: OutboundTransport,
    ):
        self._store = store
        self._directory = directory
        self._renderer = renderer
        self._transport = transport

    @property
    def directory(self) -> RecipientDirectory:
        return self._directory

    async def resolve_recipients(self, schedule: ScheduleDefinition) -> list[Recipient]:
        """Eligible recipients of a schedule, capped and de-duplicated.

        Raises:
            RecipientResolutionError: If the directory cannot be queried
        """
        settings = schedule.settings
        try:
            resolved = await self._directory.resolve(schedule.list_ref, settings.exclude_statuses)
        except RecipientResolutionError:
            raise
        except Exception as e:
            raise RecipientResolutionError(
                f"Could not resolve {schedule.list_ref!r} for schedule {schedule.schedule_id}: {e}"
            ) from e

        seen: set[str] = set()
        recipients = []
        for recipient in resolved:
            if recipient.recipient_id in seen:
                continue
            seen.add(recipient.recipient_id)
            recipients.append(recipient)

        if len(recipients) > settings.max_recipients_per_run:
            logger.warning(
                f"Schedule {schedule.schedule_id}: {len(recipients)} recipients, "
                f"capped at {settings.max_recipients_per_run}"
            )
            recipients = recipients[: settings.max_recipients_per_run]
        return recipients

    async def dispatch_run(self, schedule: ScheduleDefinition, run_id: str) -> RunSummary:
        """Send the schedule's content to every eligible recipient.

        Recipients are processed batch by batch. Before each batch the
        schedule is re-read: if it was paused the run stops (and resumes
        later under the same run_id); if it was cancelled the remaining
        recipients are recorded as SKIPPED.

        Args:
            schedule: The claimed schedule
            run_id: Ledger key of this run

        Returns:
            Summary of this invocation (ledger hits count as skipped)

        Raises:
            RecipientResolutionError: If the directory cannot be queried
            PersistenceError: If the ledger cannot be written
        """
        settings = schedule.settings
        recipients = await self.resolve_recipients(schedule)
        summary = RunSummary(run_id=run_id)
        semaphore = asyncio.Semaphore(settings.concurrency_limit)

        logger.info(
            f"Dispatching run {run_id} of schedule {schedule.schedule_id} "
            f"to {len(recipients)} recipients"
        )

        for start in range(0, len(recipients), settings.batch_size):
            current = await self._store.get_schedule(schedule.schedule_id)
            if current is None or current.status is ScheduleStatus.CANCELLED:
                summary.stopped_by = str(ScheduleStatus.CANCELLED)
                await self._skip_remaining(run_id, recipients[start:], summary)
                logger.info(f"Run {run_id} cancelled, skipped {len(recipients) - start} recipients")
                break
            if current.status is ScheduleStatus.PAUSED:
                summary.stopped_by = str(ScheduleStatus.PAUSED)
                logger.info(f"Run {run_id} paused after {start} recipients")
                break

            batch = recipients[start : start + settings.batch_size]
            results = await asyncio.gather(
                *(
                    self._dispatch_counted(
                        semaphore, run_id, schedule.content_ref, r, summary, settings.throttle_delay
                    )
                    for r in batch
                ),
                return_exceptions=True,
            )
            # Let the whole batch settle, then surface the first fatal error
            for result in results:
                if isinstance(result, BaseException):
                    raise result

        logger.info(
            f"Run {run_id} finished: attempted={summary.attempted} succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    async def dispatch_single(
        self,
        run_id: str,
        recipient_id: str,
        content_ref: str,
        exclude_statuses: Sequence[str],
    ) -> DispatchResult:
        """Send content to one recipient (a workflow action).

        The recipient is looked up again at send time, so a recipient who
        unsubscribed since enrollment comes back as suppressed and nothing
        is sent.

        Raises:
            PersistenceError: If the ledger cannot be written
        """
        try:
            recipient = await self._directory.lookup(recipient_id, exclude_statuses)
        except Exception as e:
            logger.warning(f"Lookup of recipient {recipient_id} failed: {e}")
            return DispatchResult(
                recipient_id=recipient_id,
                outcome=AttemptOutcome.FAILED,
                error=f"recipient lookup failed: {e}",
                retryable=True,
            )

        if recipient is None:
            logger.debug(f"Recipient {recipient_id} is suppressed, not sending {run_id}")
            return DispatchResult(
                recipient_id=recipient_id, outcome=AttemptOutcome.SKIPPED, suppressed=True
            )

        return await self._dispatch_recipient(run_id, content_ref, recipient)

    async def _dispatch_counted(
        self,
        semaphore: asyncio.Semaphore,
        run_id: str,
        content_ref: str,
        recipient: Recipient,
        summary: RunSummary,
        throttle_delay: timedelta = timedelta(0),
    ) -> None:
        async with semaphore:
            result = await self._dispatch_recipient(run_id, content_ref, recipient)
            if throttle_delay and result.outcome is not AttemptOutcome.SKIPPED:
                # The slot stays taken, so each slot sends at most once per delay
                await asyncio.sleep(throttle_delay.total_seconds())

        if result.outcome is AttemptOutcome.SUCCEEDED:
            summary.record_success()
        elif result.outcome is AttemptOutcome.FAILED:
            summary.record_failure(recipient.recipient_id, result.error or "failed")
        else:
            summary.record_skip()

    async def _dispatch_recipient(
        self, run_id: str, content_ref: str, recipient: Recipient
    ) -> DispatchResult:
        recipient_id = recipient.recipient_id
        record = await self._store.record_attempt(run_id, recipient_id, _utcnow())
        if record is None:
            logger.debug(f"Run {run_id}: {recipient_id} already handled, skipping")
            return DispatchResult(recipient_id=recipient_id, outcome=AttemptOutcome.SKIPPED)

        try:
            content = await self._renderer.render(content_ref, dict(recipient.attributes))
            sent = await self._transport.send(
                recipient.address,
                content.subject,
                content.html_body,
                content.text_body,
                record.correlation_id,
            )
            if not sent.accepted:
                raise TransportError(sent.reason or "rejected by provider", is_retryable=False)
        except PersistenceError:
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            retryable = e.is_retryable() if isinstance(e, RetryableError) else True
            await self._store.complete_attempt(
                run_id,
                recipient_id,
                record.attempt_number,
                AttemptOutcome.FAILED,
                now=_utcnow(),
                error=error,
            )
            logger.debug(f"Run {run_id}: {recipient_id} failed (retryable={retryable}): {error}")
            return DispatchResult(
                recipient_id=recipient_id,
                outcome=AttemptOutcome.FAILED,
                error=error,
                retryable=retryable,
            )

        final = await self._store.complete_attempt(
            run_id,
            recipient_id,
            record.attempt_number,
            AttemptOutcome.SUCCEEDED,
            now=_utcnow(),
            provider_message_id=sent.provider_message_id,
        )
        if final.outcome is AttemptOutcome.FAILED:
            # A bounce reported by the provider before send() returned
            return DispatchResult(
                recipient_id=recipient_id,
                outcome=AttemptOutcome.FAILED,
                error=final.error or "failed by delivery callback",
                retryable=False,
            )
        return DispatchResult(
            recipient_id=recipient_id,
            outcome=AttemptOutcome.SUCCEEDED,
            provider_message_id=sent.provider_message_id,
        )

    async def _skip_remaining(
        self, run_id: str, recipients: list[Recipient], summary: RunSummary
    ) -> None:
        for recipient in recipients:
            record = await self._store.record_attempt(run_id, recipient.recipient_id, _utcnow())
            if record is not None:
                await self._store.complete_attempt(
                    run_id,
                    recipient.recipient_id,
                    record.attempt_number,
                    AttemptOutcome.SKIPPED,
                    now=_utcnow(),
                    error="run cancelled",
                )
            summary.record_skip()


__all__ = ["Dispatcher", "DispatchResult"]
