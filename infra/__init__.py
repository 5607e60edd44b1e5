"""Infrastructure modules for the exit and standing-order engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .state_store import BestEffortWriter, InMemoryLedgerStore, JsonLedgerStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"TickStats",
	"BestEffortWriter",
	"InMemoryLedgerStore",
	"JsonLedgerStore",
]
