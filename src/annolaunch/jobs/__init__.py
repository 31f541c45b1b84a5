"""Job lifecycle management for Annotat3D instances."""

from annolaunch.jobs.manager import JobManager
from annolaunch.jobs.models import CancelResult, SubmissionLimits, SubmissionParams, SubmitResult

__all__ = [
    "CancelResult",
    "JobManager",
    "SubmissionLimits",
    "SubmissionParams",
    "SubmitResult",
]
