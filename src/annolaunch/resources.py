"""Per-user partition resources from the user-partitions report."""

import json
import logging

from pydantic import BaseModel, Field, ValidationError

from annolaunch.errors import ParseError
from annolaunch.models import PartitionResources, ResourceCount

logger = logging.getLogger(__name__)


class CpusState(BaseModel):
    """sinfo ``%C`` counts: allocated/idle/other/total."""

    allocated: str
    idle: str
    other: str
    total: str


class GroupQoSLimit(BaseModel):
    """GrpTRES limits of the user's QoS; the string ``"null"`` means unset."""

    cpu: str | None = None
    gpu: str | None = None
    mem: str | None = None


class PartitionReport(BaseModel):
    partition_name: str = Field(alias="partitionName")
    qos: str
    node_list: str = Field(alias="nodeList")
    cpus_state: CpusState = Field(alias="cpusState")
    gres_total: str = Field(alias="gresTotal")
    gres_used: str = Field(alias="gresUsed")
    group_qos_limit: GroupQoSLimit = Field(alias="groupQoSLimit")


class UserPartitionsReport(BaseModel):
    """Document printed by the user-partitions script."""

    username: str
    partitions: list[PartitionReport]


def parse_count(value: str | None) -> int | None:
    """Parse a count reported by the cluster.

    ``None``, the literal ``"null"`` (no limit set), empty and
    non-numeric values all yield None.
    """
    if value is None:
        return None
    value = value.strip()
    if value in ("", "null"):
        return None
    try:
        return int(value, 10)
    except ValueError:
        return None


def derive_resources(max_value: int, used: int) -> ResourceCount:
    """Free units for a known maximum; never negative, 0 when no maximum."""
    free = max(0, max_value - used) if max_value > 0 else 0
    return ResourceCount(free=free, max=max_value)


def partition_resources(report: PartitionReport) -> PartitionResources:
    """Merge QoS limits with live allocation for one partition.

    A group QoS limit replaces the partition total when set.
    """
    limits = report.group_qos_limit
    max_cpus = parse_count(limits.cpu)
    if max_cpus is None:
        max_cpus = parse_count(report.cpus_state.total) or 0
    max_gpus = parse_count(limits.gpu)
    if max_gpus is None:
        max_gpus = parse_count(report.gres_total) or 0

    used_cpus = parse_count(report.cpus_state.allocated) or 0
    used_gpus = parse_count(report.gres_used) or 0

    return PartitionResources(
        name=report.partition_name,
        node_list=report.node_list,
        cpus=derive_resources(max_cpus, used_cpus),
        gpus=derive_resources(max_gpus, used_gpus),
    )


def parse_user_partitions(raw: str) -> list[PartitionResources]:
    """Parse the user-partitions JSON document.

    Raises:
        ParseError: If the output is empty, not JSON, or off-schema.
    """
    raw = raw.strip()
    if not raw:
        raise ParseError("Empty response from user partitions script")
    try:
        report = UserPartitionsReport.model_validate(json.loads(raw))
    except json.JSONDecodeError as e:
        logger.warning(f"User partitions output is not JSON: {raw[:200]!r}")
        raise ParseError(f"User partitions output is not JSON: {e}") from e
    except ValidationError as e:
        raise ParseError(f"Unexpected user partitions document: {e}") from e
    return [partition_resources(p) for p in report.partitions]
