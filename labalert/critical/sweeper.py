import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import AlertingError, PersistenceConflictError, RecipientNotFoundError
from ..models.critical_models import NotificationStatusEnum
from ..notifications.alerts import build_critical_result_alert, build_escalation_alert
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.roster import ESCALATION_CAPABILITIES, RecipientResolver
from ..store.base import AlertStore
from .records import CriticalResult
from .tracker import CriticalResultTracker

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10


@dataclass
class SweepReport:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    pending_found: int = 0
    stale_found: int = 0
    notified: int = 0
    delivery_failures: int = 0
    escalated: int = 0
    skipped: int = 0
    refused: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'pending_found': self.pending_found,
            'stale_found': self.stale_found,
            'notified': self.notified,
            'delivery_failures': self.delivery_failures,
            'escalated': self.escalated,
            'skipped': self.skipped,
            'refused': self.refused,
            'errors': dict(self.errors)
        }


class EscalationSweeper:
    """Periodic pass over critical results.

    Each cycle first notifies the assigned clinician of every pending result,
    then escalates every notified result left unacknowledged for longer than
    the tracker's threshold. Records are handled concurrently, at most
    ``concurrency`` at a time, and a failing record is logged and counted
    without affecting the rest of the cycle. Store and roster calls run in
    the default executor so a database-backed store does not block the loop.
    """

    def __init__(self, store: AlertStore, tracker: CriticalResultTracker,
                 dispatcher: NotificationDispatcher, resolver: RecipientResolver,
                 concurrency: int = DEFAULT_CONCURRENCY):
        self.store = store
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.concurrency = concurrency
        self._running = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def sweep(self) -> SweepReport:
        if self._running.locked():
            logger.warning("Escalation sweep already in progress, skipping this invocation")
            return SweepReport(refused=True)

        async with self._running:
            report = SweepReport(started_at=self.tracker.clock())
            semaphore = asyncio.Semaphore(self.concurrency)

            pending = await self._blocking(self.store.find_critical_results, NotificationStatusEnum.PENDING)
            report.pending_found = len(pending)
            await self._process(pending, self._notify_clinician, semaphore, report)

            cutoff = self.tracker.clock() - self.tracker.escalation_threshold
            stale = await self._blocking(self.store.find_unacknowledged_notified, cutoff)
            report.stale_found = len(stale)
            await self._process(stale, self._escalate, semaphore, report)

            report.finished_at = self.tracker.clock()

        logger.info(
            f"Escalation sweep finished: {report.notified} notified, {report.escalated} escalated, "
            f"{report.delivery_failures} undelivered, {report.skipped} skipped, {len(report.errors)} errors"
        )
        return report

    async def _process(self, results: List[CriticalResult],
                       handler: Callable[[CriticalResult, SweepReport], Awaitable[None]],
                       semaphore: asyncio.Semaphore, report: SweepReport) -> None:
        async def guarded(result: CriticalResult) -> None:
            async with semaphore:
                try:
                    await handler(result, report)
                except PersistenceConflictError:
                    report.skipped += 1
                    logger.info(f"Critical result {result.result_id} was updated concurrently, leaving it")
                except AlertingError as e:
                    report.errors[result.result_id] = str(e)
                    logger.error(f"Critical result {result.result_id} not processed: {str(e)}")
                except Exception as e:
                    report.errors[result.result_id] = str(e) or type(e).__name__
                    logger.exception(f"Unexpected error processing critical result {result.result_id}: {str(e)}")

        await asyncio.gather(*(guarded(result) for result in results))

    async def _notify_clinician(self, result: CriticalResult, report: SweepReport) -> None:
        current = await self._blocking(self.tracker.get, result.result_id)
        if current.version != result.version:
            # advanced since the query ran
            report.skipped += 1
            return

        recipient = await self._blocking(self.resolver.resolve_user, current.tenant_id, current.clinician_id)
        if recipient is None:
            reason = f"No notification contact for clinician {current.clinician_id}"
            await self._blocking(self.tracker.record_failure, current, reason)
            raise RecipientNotFoundError(reason, record_id=current.result_id)

        outcome = await self.dispatcher.dispatch(build_critical_result_alert(current), [recipient])
        updated = await self._blocking(self.tracker.record_dispatch, current, outcome)
        if updated.notification_status == NotificationStatusEnum.NOTIFIED:
            report.notified += 1
        else:
            report.delivery_failures += 1
            logger.warning(
                f"Critical result {current.result_id} still pending after attempt "
                f"{updated.notification_attempts}: {updated.notification_error}"
            )

    async def _escalate(self, result: CriticalResult, report: SweepReport) -> None:
        recipients = await self._blocking(
            self.resolver.resolve_capabilities, result.tenant_id, ESCALATION_CAPABILITIES,
            exclude=[result.clinician_id]
        )
        if not recipients:
            # stays notified, so the next sweep tries again once the roster is fixed
            raise RecipientNotFoundError(
                f"No escalation recipients for tenant {result.tenant_id}", record_id=result.result_id
            )

        escalated = await self._blocking(self.tracker.escalate, result)
        report.escalated += 1
        alert = build_escalation_alert(escalated, now=escalated.escalated_at)
        outcome = await self.dispatcher.dispatch(alert, recipients)
        await self._blocking(self.tracker.record_escalation_dispatch, escalated, outcome)

    async def _blocking(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
