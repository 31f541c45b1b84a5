"""Job manager - submission, cancellation and reporting of instances."""

from __future__ import annotations

import asyncio
import logging
import shlex
import tempfile
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

from annolaunch.backends.slurm import (
    cluster_partitions_command,
    parse_job_report,
    parse_job_state,
    parse_partitions,
    parse_recent_jobs,
    recent_jobs_command,
    report_command,
    sbatch_command,
    scancel_command,
    state_command,
    user_associations_command,
    validate_job_id,
    validate_name,
)
from annolaunch.credentials import KeyStore, identity_for
from annolaunch.errors import CommandError, MissingCredentialsError, TransportError
from annolaunch.jobs.models import (
    CancelResult,
    SubmissionLimits,
    SubmissionParams,
    SubmitResult,
)
from annolaunch.models import JobRecord, JobState, PartitionResources, RecentJob
from annolaunch.resources import parse_user_partitions
from annolaunch.ssh.client import CommandResult, SSHClient, join_commands
from annolaunch.templating import ScriptTemplate, load_builtin

if TYPE_CHECKING:
    from annolaunch.config_schema import LauncherConfig
    from annolaunch.ssh.pool import ConnectionPool

logger = logging.getLogger(__name__)

SCRIPT_TOKENS = frozenset({
    "JOB_NAME",
    "PARTITION",
    "CPUS",
    "GPUS",
    "OUTPUT_DIR",
    "CONTAINER_PATH",
    "PORT_RANGE_START",
    "PORT_RANGE_END",
    "ANNOTAT3D_ARGS",
})
PARTITIONS_TOKENS = frozenset({"INPUT_USERNAME"})

# scancel messages for jobs that are already past the point of cancelling
_ALREADY_TERMINAL_MARKERS = (
    "already completing or completed",
    "job has already finished",
)


def load_script_template(config: LauncherConfig) -> ScriptTemplate:
    """Load and validate the submission template named by the config."""
    if config.slurm.script_template is not None:
        return ScriptTemplate.from_file(config.slurm.script_template, required=SCRIPT_TOKENS)
    return load_builtin("annotat3d.sbatch", required=SCRIPT_TOKENS)


class JobManager:
    """Runs the instance lifecycle against the cluster on behalf of users.

    Holds no job state: every query re-reads the accounting database.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        key_store: KeyStore,
        config: LauncherConfig,
        script_template: ScriptTemplate | None = None,
        partitions_template: ScriptTemplate | None = None,
    ) -> None:
        """Initialize with an injected connection pool and key store.

        Templates are validated here so a broken template fails at startup.
        """
        self.pool = pool
        self.key_store = key_store
        self.config = config
        self.limits = SubmissionLimits(
            gpu_options=list(config.slurm.gpu_options),
            max_cpus=config.slurm.max_cpus,
        )
        self.script_template = script_template or load_script_template(config)
        self.partitions_template = partitions_template or load_builtin(
            "user-partitions.sh", required=PARTITIONS_TOKENS
        )

    @property
    def job_name(self) -> str:
        return self.config.slurm.job_name

    async def _client(self, username: str) -> SSHClient:
        """Borrow the pooled connection for a user."""
        identity = identity_for(self.key_store, username, passphrase=self.config.ssh.passphrase)
        if identity is None:
            raise MissingCredentialsError(username)
        return await self.pool.acquire(identity)

    async def _run(
        self,
        username: str,
        command: list[str] | str,
        context: str,
        input: str | None = None,
    ) -> CommandResult:
        """Run a command, raising CommandError when it writes to stderr."""
        client = await self._client(username)
        result = await client.run_command(command, input=input)
        if result.failed:
            logger.error(f"{context} failed for {username}: {result.stderr.strip()}")
            raise CommandError.from_stderr(result.stderr, context)
        return result

    # --- Submission ---

    def render_script(self, params: SubmissionParams) -> str:
        """Render the sbatch script for validated parameters."""
        start, end = self.config.slurm.port_range
        return self.script_template.render({
            "JOB_NAME": self.job_name,
            "PARTITION": params.partition,
            "CPUS": params.cpus,
            "GPUS": params.gpus,
            "OUTPUT_DIR": params.output_dir,
            "CONTAINER_PATH": shlex.quote(self.config.slurm.container_path),
            "PORT_RANGE_START": start,
            "PORT_RANGE_END": end,
            "ANNOTAT3D_ARGS": shlex.join(params.annotat3d_args()),
        })

    async def submit(self, username: str, params: SubmissionParams | dict[str, Any]) -> SubmitResult:
        """Submit a new instance and return its Slurm job ID.

        Parameters are validated before any connection is opened. The
        script is written to a local temporary directory, uploaded to the
        output directory and submitted with ``sbatch --parsable``; the
        temporary directory is removed on every path, and the uploaded
        script is deleted again when sbatch rejects it.
        """
        if not isinstance(params, SubmissionParams):
            params = SubmissionParams.parse(params)
        self.limits.check(params)
        validate_name(username, "user")

        script = self.render_script(params)
        client = await self._client(username)
        remote_script = f"{params.output_dir}{self.job_name}-{uuid.uuid4().hex[:8]}.sbatch"

        with tempfile.TemporaryDirectory(prefix="annolaunch-") as tmp_dir:
            local_script = Path(tmp_dir) / "script.sbatch"
            await asyncio.to_thread(local_script.write_text, script)
            await client.put_file(local_script, remote_script)

        result = await client.run_command(sbatch_command(remote_script))
        if result.failed:
            logger.error(f"sbatch failed for {username}: {result.stderr.strip()}")
            await self._remove_script(client, remote_script)
            raise CommandError.from_stderr(result.stderr, "sbatch failed")

        # --parsable prints "jobid" or "jobid;cluster"
        output = result.stdout.strip()
        job_id = output.split(";")[0]
        if not job_id or any(c.isspace() for c in job_id):
            logger.error(f"Could not parse job ID from: {output!r}")
            raise CommandError(f"Could not parse job ID from sbatch output: {output!r}", stderr=output)

        logger.info(
            f"Submitted {self.job_name} for {username} as Slurm job {job_id} "
            f"(partition={params.partition}, cpus={params.cpus}, gpus={params.gpus})"
        )
        return SubmitResult(job_id=job_id)

    async def _remove_script(self, client: SSHClient, remote_script: str) -> None:
        """Delete a script that sbatch rejected."""
        try:
            result = await client.run_command(["rm", "-f", "--", remote_script])
        except TransportError as e:
            logger.warning(f"Could not remove {remote_script}: {e}")
            return
        if result.failed:
            logger.warning(f"Could not remove {remote_script}: {result.stderr.strip()}")

    # --- Cancellation ---

    async def cancel(self, username: str, job_id: str) -> CancelResult:
        """Cancel a job with scancel.

        A job that is already terminal is not an error: the result has
        ``cancelled=False`` and the scheduler's message. Any other stderr
        raises CommandError.
        """
        command = scancel_command(job_id)
        client = await self._client(username)
        result = await client.run_command(command)
        if result.failed:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in _ALREADY_TERMINAL_MARKERS):
                logger.info(f"Job {job_id} of {username} already finished: {stderr}")
                return CancelResult(cancelled=False, message=stderr)
            logger.error(f"scancel failed for job {job_id}: {stderr}")
            raise CommandError.from_stderr(result.stderr, f"scancel {job_id} failed")

        logger.info(f"Cancelled Slurm job {job_id} for {username}")
        return CancelResult(cancelled=True)

    # --- Queries ---

    async def report(self, username: str, job_id: str) -> JobRecord:
        """Fetch the accounting record of a job with its step projection."""
        job_id = validate_job_id(job_id)
        result = await self._run(username, report_command(job_id), f"sacct report for job {job_id}")
        return parse_job_report(result.stdout, job_id)

    async def status(self, username: str, job_id: str) -> JobState | None:
        """State of the job's batch step, or of the allocation while pending."""
        job_id = validate_job_id(job_id)
        result = await self._run(username, state_command(f"{job_id}.batch"), f"sacct state for job {job_id}")
        state = parse_job_state(result.stdout)
        if state is not None:
            return state
        # No .batch step yet: the job may still be PENDING
        result = await self._run(username, state_command(job_id), f"sacct state for job {job_id}")
        return parse_job_state(result.stdout)

    async def list_recent(self, username: str) -> list[RecentJob]:
        """Jobs this launcher submitted for the user."""
        result = await self._run(
            username,
            recent_jobs_command(username, self.job_name),
            "sacct recent jobs",
        )
        return parse_recent_jobs(result.stdout)

    async def list_partitions(self, username: str) -> list[str]:
        """Partitions the user may submit to."""
        command = join_commands(
            cluster_partitions_command(),
            ["echo", "###"],
            user_associations_command(username),
        )
        result = await self._run(username, command, "partition query")
        return parse_partitions(result.stdout)

    async def user_partitions(self, username: str) -> list[PartitionResources]:
        """Free and maximum CPUs/GPUs per partition for the user."""
        script = self.partitions_template.render({
            "INPUT_USERNAME": shlex.quote(validate_name(username, "user")),
        })
        result = await self._run(username, ["bash", "-s"], "user partitions script", input=script)
        return parse_user_partitions(result.stdout)

    async def watch(
        self,
        username: str,
        job_id: str,
        interval: float = 5.0,
    ) -> AsyncIterator[JobRecord]:
        """Yield a fresh report every ``interval`` seconds until the job ends."""
        while True:
            record = await self.report(username, job_id)
            yield record
            if record.is_terminal:
                return
            if record.state is None:
                logger.warning(
                    f"Job {job_id} reported unknown state {record.raw_state!r}, stopping watch"
                )
                return
            await asyncio.sleep(interval)
