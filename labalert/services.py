from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from .audit.trail import AuditTrail
from .config import AlertingSettings
from .critical.scheduler import SweepTicker
from .critical.sweeper import EscalationSweeper
from .critical.tracker import CriticalResultTracker
from .notifications.dispatcher import NotificationDispatcher
from .notifications.notifier import LoggingNotifier, Notifier
from .notifications.roster import RecipientResolver, SqlRosterResolver
from .qc.evaluator import QCRunEvaluator
from .qc.window import StatisticsWindow
from .store.base import AlertStore
from .store.sql import SqlAlchemyAlertStore
from .utils.timeutils import utcnow


@dataclass
class AlertingServices:
    settings: AlertingSettings
    store: AlertStore
    audit: AuditTrail
    resolver: RecipientResolver
    dispatcher: NotificationDispatcher
    evaluator: QCRunEvaluator
    tracker: CriticalResultTracker
    sweeper: EscalationSweeper
    ticker: SweepTicker


def build_services(settings: AlertingSettings,
                   store: Optional[AlertStore] = None,
                   resolver: Optional[RecipientResolver] = None,
                   notifier: Optional[Notifier] = None,
                   clock: Callable[[], datetime] = utcnow) -> AlertingServices:
    """Wire the alerting core. Without an explicit store the SQLAlchemy store and roster are used."""
    if store is None or resolver is None:
        from .database import SessionLocal
        store = store or SqlAlchemyAlertStore(SessionLocal)
        resolver = resolver or SqlRosterResolver(SessionLocal)

    audit = AuditTrail(store, clock)
    dispatcher = NotificationDispatcher(notifier or LoggingNotifier(), settings.channel_timeout_seconds)
    window = StatisticsWindow(capacity=settings.window_size, loader=store.recent_measurements)
    evaluator = QCRunEvaluator(store, window, dispatcher, resolver, clock=clock, audit=audit)
    tracker = CriticalResultTracker(store, settings.escalation_threshold, clock=clock, audit=audit)
    sweeper = EscalationSweeper(store, tracker, dispatcher, resolver, concurrency=settings.dispatch_concurrency)
    ticker = SweepTicker(sweeper, settings.sweep_interval_seconds, settings.sweep_jitter_seconds)
    return AlertingServices(
        settings=settings,
        store=store,
        audit=audit,
        resolver=resolver,
        dispatcher=dispatcher,
        evaluator=evaluator,
        tracker=tracker,
        sweeper=sweeper,
        ticker=ticker
    )


def get_services(request: Request) -> AlertingServices:
    return request.app.state.services
