"""Data models for job management."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class KeyPair:
    """An OpenSSH key pair stored for a user."""

    public_key: str
    private_key: str


@dataclass(frozen=True)
class Identity:
    """Credentials used to open a connection as a cluster user."""

    username: str
    private_key: str | None = None
    passphrase: str | None = None
    password: str | None = None

    @classmethod
    def from_keys(cls, username: str, keys: KeyPair, passphrase: str | None = None) -> "Identity":
        return cls(username=username, private_key=keys.private_key, passphrase=passphrase)

    def __repr__(self) -> str:
        return f"Identity(username={self.username!r})"


class JobState(str, Enum):
    """Slurm job states (mirrors ``enum job_states`` in slurm.h)."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    NODE_FAIL = "NODE_FAIL"
    PREEMPTED = "PREEMPTED"
    BOOT_FAIL = "BOOT_FAIL"
    DEADLINE = "DEADLINE"
    OOM = "OOM"
    END = "END"

    @classmethod
    def from_string(cls, state: str | None) -> "JobState | None":
        """Parse a state string as printed by sacct/squeue.

        Handles long accounting names and compact codes. Returns None for
        anything outside the enumeration.
        """
        if not state:
            return None
        state = state.strip().upper()
        alias_map = {
            "PD": cls.PENDING,
            "REQUEUED": cls.PENDING,
            "RQ": cls.PENDING,
            "R": cls.RUNNING,
            "COMPLETING": cls.RUNNING,
            "CG": cls.RUNNING,
            "S": cls.SUSPENDED,
            "COMPLETED": cls.COMPLETE,
            "CD": cls.COMPLETE,
            "CA": cls.CANCELLED,
            "F": cls.FAILED,
            "TO": cls.TIMEOUT,
            "NF": cls.NODE_FAIL,
            "PR": cls.PREEMPTED,
            "BF": cls.BOOT_FAIL,
            "DL": cls.DEADLINE,
            "OUT_OF_MEMORY": cls.OOM,
            "OUT_OF_ME+": cls.OOM,
        }
        if state in alias_map:
            return alias_map[state]
        try:
            return cls(state)
        except ValueError:
            return None

    @property
    def is_error(self) -> bool:
        return self in ERROR_STATES

    @property
    def is_finished(self) -> bool:
        return self in FINISH_STATES

    @property
    def is_terminal(self) -> bool:
        """Whether the cluster accepts no further transitions for this state."""
        return self in ERROR_STATES or self in FINISH_STATES or self is JobState.END


ERROR_STATES: frozenset[JobState] = frozenset({
    JobState.SUSPENDED,
    JobState.FAILED,
    JobState.TIMEOUT,
    JobState.NODE_FAIL,
    JobState.PREEMPTED,
    JobState.BOOT_FAIL,
    JobState.OOM,
})

FINISH_STATES: frozenset[JobState] = frozenset({
    JobState.COMPLETE,
    JobState.CANCELLED,
    JobState.DEADLINE,
})


class StepStatus(str, Enum):
    """Progress of one instance step."""

    UNKNOWN = "unknown"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class InstanceSteps:
    """Submit/start/finish projection shown as instance progress."""

    submit: StepStatus = StepStatus.UNKNOWN
    start: StepStatus = StepStatus.UNKNOWN
    finish: StepStatus = StepStatus.UNKNOWN

    def to_dict(self) -> dict[str, str]:
        return {
            "submit": self.submit.value,
            "start": self.start.value,
            "finish": self.finish.value,
        }


@dataclass
class JobRecord:
    """One job as reported by the accounting database."""

    job_id: str
    state: JobState | None
    raw_state: str
    submit: str | None = None
    start: str | None = None
    end: str | None = None
    elapsed: str | None = None
    partition: str | None = None
    node_list: str | None = None
    alloc_gres: str | None = None
    ncpus: str | None = None
    reason: str | None = None
    exit_code: str | None = None
    steps: InstanceSteps = field(default_factory=InstanceSteps)

    @property
    def is_terminal(self) -> bool:
        return self.state is not None and self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the RPC shape."""
        return {
            "jobId": self.job_id,
            "state": self.state.value if self.state else self.raw_state,
            "submit": self.submit,
            "start": self.start,
            "end": self.end,
            "elapsed": self.elapsed,
            "partition": self.partition,
            "nodeList": self.node_list,
            "allocGRES": self.alloc_gres,
            "nCPUS": self.ncpus,
            "reason": self.reason,
            "exitCode": self.exit_code,
            "steps": self.steps.to_dict(),
        }


@dataclass
class RecentJob:
    """A job submitted by this launcher, as listed by sacct."""

    job_id: str
    state: JobState | None
    raw_state: str

    def to_dict(self) -> dict[str, str]:
        return {
            "jobId": self.job_id,
            "state": self.state.value if self.state else self.raw_state,
        }


@dataclass
class ResourceCount:
    """Free and maximum units of one resource."""

    free: int
    max: int

    def to_dict(self) -> dict[str, int]:
        return {"free": self.free, "max": self.max}


@dataclass
class PartitionResources:
    """Per-user view of a partition's CPUs and GPUs."""

    name: str
    cpus: ResourceCount
    gpus: ResourceCount
    node_list: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "nodeList": self.node_list,
            "cpus": self.cpus.to_dict(),
            "gpus": self.gpus.to_dict(),
        }


@dataclass
class RemoteEntry:
    """A directory listing entry on the remote host."""

    name: str
    type: str  # "file" or "directory"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "type": self.type}
