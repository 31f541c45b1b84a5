"""Scheduler command builders and output parsers."""

from annolaunch.backends.slurm import (
    parse_job_report,
    parse_job_state,
    parse_partitions,
    parse_recent_jobs,
)

__all__ = [
    "parse_job_report",
    "parse_job_state",
    "parse_partitions",
    "parse_recent_jobs",
]
