"""cyclesync: Resumable cycled workflows for rate-limited data providers."""

from .app import CycleSyncApp
from .contracts import StepOutcome, WorkflowDefinition, WorkflowStep
from .coordinator import JobContext, JobExecutionCoordinator
from .engine import CycleEngine
from .persistence import get_repository
from .quota import QuotaLimitManager, is_quota_signal
from .recovery import RecoveryController, RecoveryOutcome
from .status import StatusPublisher, read_status

__version__ = "0.1.0"
__all__ = [
    "CycleEngine",
    "CycleSyncApp",
    "JobContext",
    "JobExecutionCoordinator",
    "QuotaLimitManager",
    "RecoveryController",
    "RecoveryOutcome",
    "StatusPublisher",
    "StepOutcome",
    "WorkflowDefinition",
    "WorkflowStep",
    "get_repository",
    "is_quota_signal",
    "read_status",
]
