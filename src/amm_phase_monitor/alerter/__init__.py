"""Alerting layer - Sink delivery and suppression counters."""

from amm_phase_monitor.alerter.dispatcher import (
    AlertDispatcher,
    AlertSink,
    DispatchResult,
    LoggingSink,
    NotificationSendError,
    SuppressionCounters,
)

__all__ = [
    "AlertDispatcher",
    "AlertSink",
    "DispatchResult",
    "LoggingSink",
    "NotificationSendError",
    "SuppressionCounters",
]
