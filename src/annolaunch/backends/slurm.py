"""Slurm command builders and parsers for sacct/sinfo/sacctmgr output."""

import logging
import re

from annolaunch.errors import JobNotFoundError, ParseError, SubmissionValidationError
from annolaunch.models import (
    InstanceSteps,
    JobRecord,
    JobState,
    RecentJob,
    StepStatus,
)

logger = logging.getLogger(__name__)


# Placeholder sacct prints for timestamps a job has not reached yet
UNKNOWN = "Unknown"

# Separator line between the sinfo and sacctmgr blocks of the partitions query
PARTITIONS_SENTINEL = "###"

# Fields of the report query, in --format order
REPORT_FIELDS = (
    "state",
    "submit",
    "start",
    "end",
    "elapsed",
    "partition",
    "node_list",
    "alloc_gres",
    "ncpus",
    "reason",
    "exit_code",
)
REPORT_FORMAT = "State,Submit,Start,End,Elapsed,Partition,NodeList,AllocGRES,NCPUS,Reason,ExitCode"

_JOB_ID_RE = re.compile(r"^\d+(_\d+)?(\.[A-Za-z0-9]+)?$")
_ASSOC_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_job_id(job_id: str) -> str:
    """Return the job id stripped, or raise if it is not a Slurm job id."""
    job_id = job_id.strip()
    if not _JOB_ID_RE.match(job_id):
        raise SubmissionValidationError(f"Invalid job id: {job_id!r}")
    return job_id


def validate_name(value: str, what: str = "name") -> str:
    """Allow-list check for user, partition and job names passed to Slurm."""
    if not _ASSOC_NAME_RE.match(value):
        raise SubmissionValidationError(f"Invalid {what}: {value!r}")
    return value


# --- Command builders ---


def sbatch_command(script_path: str) -> list[str]:
    return ["sbatch", "--parsable", script_path]


def scancel_command(job_id: str) -> list[str]:
    return ["scancel", validate_job_id(job_id)]


def report_command(job_id: str) -> list[str]:
    return [
        "sacct",
        f"--format={REPORT_FORMAT}",
        "--parsable2",
        "--noheader",
        f"--jobs={validate_job_id(job_id)}",
    ]


def state_command(job_id: str) -> list[str]:
    return ["sacct", "--format=State", "--parsable2", "--noheader", f"--jobs={validate_job_id(job_id)}"]


def recent_jobs_command(user: str, job_name: str) -> list[str]:
    return [
        "sacct",
        "--parsable2",
        "--noheader",
        "--allocations",
        f"--user={validate_name(user, 'user')}",
        f"--name={validate_name(job_name, 'job name')}",
        "--format=JobID,State",
    ]


def cluster_partitions_command() -> list[str]:
    return ["sinfo", "--noheader", "--format=%P"]


def user_associations_command(user: str) -> list[str]:
    return [
        "sacctmgr",
        "show",
        "association",
        "-P",
        "-r",
        "--noheader",
        "format=Partition",
        f"users={validate_name(user, 'user')}",
    ]


# --- State helpers ---


def strip_state_qualifier(raw: str) -> str:
    """Reduce a raw state to its bare name.

    Drops the ``by <uid>`` qualifier sacct appends to CANCELLED and a
    trailing ``_``-delimited suffix that is not part of the state name,
    so ``NODE_FAIL`` survives while ``CANCELLED_1`` becomes ``CANCELLED``.
    """
    token = raw.strip().split(" ")[0]
    if JobState.from_string(token) is not None or "_" not in token:
        return token
    head = token.rsplit("_", 1)[0]
    if JobState.from_string(head) is not None:
        return head
    return token.split("_")[0]


def _field(parts: list[str], index: int) -> str | None:
    """Return a field of a split line, or None past the end of a short line."""
    return parts[index] if index < len(parts) else None


# --- Step status projection ---


def check_submit_status(record: JobRecord) -> StepStatus:
    """Submitted once sacct has a submit time, or while the job is pending."""
    if (record.submit and record.submit != UNKNOWN) or record.state is JobState.PENDING:
        return StepStatus.SUCCESS
    return StepStatus.ERROR


def check_start_status(record: JobRecord) -> StepStatus:
    if record.start is None or record.start == UNKNOWN:
        return StepStatus.UNKNOWN
    if record.state is not None and record.state.is_error:
        return StepStatus.ERROR
    return StepStatus.SUCCESS


def check_finish_status(record: JobRecord) -> StepStatus:
    if record.end is None or record.end == UNKNOWN:
        return StepStatus.UNKNOWN
    if record.state is not None and record.state.is_finished:
        return StepStatus.SUCCESS
    return StepStatus.ERROR


def instance_steps(record: JobRecord) -> InstanceSteps:
    """Compute the submit/start/finish projection for a record."""
    return InstanceSteps(
        submit=check_submit_status(record),
        start=check_start_status(record),
        finish=check_finish_status(record),
    )


# --- Parsers ---


def parse_job_report(raw: str, job_id: str = "") -> JobRecord:
    """Parse the report query output into a JobRecord.

    Only the first non-empty line is used; job steps (.batch, .extern)
    repeat the allocation on later lines. Fields missing from a short
    line are None.

    Raises:
        JobNotFoundError: If sacct returned no rows.
        ParseError: If the first row has no state.
    """
    lines = [line for line in raw.splitlines() if line.strip()]
    if not lines:
        raise JobNotFoundError(job_id)

    parts = lines[0].strip().split("|")
    raw_state = parts[0].strip()
    if not raw_state:
        logger.warning(f"sacct row for job {job_id} has no state: {lines[0]!r}")
        raise ParseError(f"Error parsing job data for job {job_id}: missing state")

    state_name = strip_state_qualifier(raw_state)
    values = {name: _field(parts, i) for i, name in enumerate(REPORT_FIELDS) if i > 0}
    record = JobRecord(
        job_id=job_id,
        state=JobState.from_string(state_name),
        raw_state=state_name,
        **values,
    )
    if record.state is None:
        logger.warning(f"Unrecognised job state {raw_state!r} for job {job_id}")
    record.steps = instance_steps(record)
    return record


def parse_job_state(raw: str) -> JobState | None:
    """Parse the first row of ``sacct --format=State`` output."""
    for line in raw.splitlines():
        if line.strip():
            return JobState.from_string(strip_state_qualifier(line))
    return None


def parse_recent_jobs(raw: str) -> list[RecentJob]:
    """Parse ``JobID|State`` rows, dropping rows missing either field."""
    jobs: list[RecentJob] = []
    for line in raw.strip().splitlines():
        parts = line.strip().split("|")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            if line.strip():
                logger.debug(f"Skipping recent-jobs row: {line!r}")
            continue
        job_id, raw_state = parts[0], parts[1]
        state_name = strip_state_qualifier(raw_state)
        jobs.append(RecentJob(
            job_id=job_id,
            state=JobState.from_string(state_name),
            raw_state=state_name,
        ))
    return jobs


def _partition_names(block: str) -> list[str]:
    names: list[str] = []
    for line in block.splitlines():
        name = line.strip().rstrip("*")
        if name and name not in names:
            names.append(name)
    return names


def parse_partitions(raw: str) -> list[str]:
    """Pick the partitions a user may submit to.

    The input is the sinfo partition list, a ``###`` line, then the user's
    association partitions. An empty second block means the user may use
    every partition of the cluster.
    """
    lines = raw.strip("\n").splitlines()
    try:
        split_at = next(i for i, line in enumerate(lines) if line.strip() == PARTITIONS_SENTINEL)
    except StopIteration:
        cluster_block, user_block = "\n".join(lines), ""
    else:
        cluster_block = "\n".join(lines[:split_at])
        user_block = "\n".join(lines[split_at + 1:])

    cluster = _partition_names(cluster_block)
    user = _partition_names(user_block)
    if user:
        return user
    if not cluster:
        raise ParseError("Cannot find available partitions of the cluster with sinfo")
    return cluster
