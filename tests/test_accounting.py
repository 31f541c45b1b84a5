"""Tests for sacct/sinfo output parsing and Slurm command builders."""

import pytest

from annolaunch.backends.slurm import (
    check_start_status,
    parse_job_report,
    parse_job_state,
    parse_partitions,
    parse_recent_jobs,
    recent_jobs_command,
    report_command,
    scancel_command,
    strip_state_qualifier,
    user_associations_command,
    validate_job_id,
)
from annolaunch.errors import JobNotFoundError, ParseError, SubmissionValidationError
from annolaunch.models import JobRecord, JobState, StepStatus


CANCELLED_LINE = "CANCELLED by 1001|2024-01-01T00:00:00|Unknown|Unknown|00:00:00|gpu|node01|gpu:1|4||"


class TestJobStateFromString:

    @pytest.mark.parametrize("raw,expected", [
        ("PENDING", JobState.PENDING),
        ("PD", JobState.PENDING),
        ("RUNNING", JobState.RUNNING),
        ("COMPLETING", JobState.RUNNING),
        ("COMPLETED", JobState.COMPLETE),
        ("OUT_OF_MEMORY", JobState.OOM),
        ("OUT_OF_ME+", JobState.OOM),
        ("NODE_FAIL", JobState.NODE_FAIL),
        ("cancelled", JobState.CANCELLED),
    ])
    def test_known_states(self, raw, expected):
        assert JobState.from_string(raw) is expected

    def test_unknown_state_is_none(self):
        assert JobState.from_string("SPECIAL_EXIT") is None
        assert JobState.from_string("") is None
        assert JobState.from_string(None) is None

    def test_terminal_states(self):
        assert JobState.CANCELLED.is_terminal
        assert JobState.OOM.is_terminal
        assert JobState.END.is_terminal
        assert not JobState.PENDING.is_terminal
        assert not JobState.RUNNING.is_terminal


class TestStripStateQualifier:

    def test_cancelled_by_uid(self):
        assert strip_state_qualifier("CANCELLED by 1001") == "CANCELLED"

    def test_underscore_state_name_survives(self):
        assert strip_state_qualifier("NODE_FAIL") == "NODE_FAIL"
        assert strip_state_qualifier("OUT_OF_MEMORY") == "OUT_OF_MEMORY"

    def test_trailing_suffix_dropped(self):
        assert strip_state_qualifier("CANCELLED_1") == "CANCELLED"


class TestParseJobReport:

    def test_cancelled_before_start(self):
        record = parse_job_report(CANCELLED_LINE, "42")

        assert record.job_id == "42"
        assert record.state is JobState.CANCELLED
        assert record.submit == "2024-01-01T00:00:00"
        assert record.partition == "gpu"
        assert record.node_list == "node01"
        assert record.alloc_gres == "gpu:1"
        assert record.ncpus == "4"
        assert record.reason == ""
        assert record.exit_code == ""
        assert record.steps.submit is StepStatus.SUCCESS
        assert record.steps.start is StepStatus.UNKNOWN
        assert record.steps.finish is StepStatus.UNKNOWN

    def test_only_first_line_used(self):
        raw = (
            "COMPLETED|2024-01-01T00:00:00|2024-01-01T00:01:00|2024-01-01T01:00:00|00:59:00|gpu|n1|gpu:2|8||0:0\n"
            "FAILED|2024-01-01T00:00:00|2024-01-01T00:01:00|2024-01-01T01:00:00|00:59:00||n1||8||1:0\n"
        )
        record = parse_job_report(raw, "7")

        assert record.state is JobState.COMPLETE
        assert record.exit_code == "0:0"
        assert record.steps.start is StepStatus.SUCCESS
        assert record.steps.finish is StepStatus.SUCCESS

    def test_leading_blank_lines_skipped(self):
        record = parse_job_report("\n\nRUNNING|2024-01-01T00:00:00|2024-01-01T00:01:00|Unknown\n", "8")
        assert record.state is JobState.RUNNING

    def test_short_line_fills_none(self):
        record = parse_job_report("RUNNING|2024-01-01T00:00:00|2024-01-01T00:01:00", "9")

        assert record.end is None
        assert record.node_list is None
        assert record.exit_code is None
        assert record.steps.start is StepStatus.SUCCESS
        assert record.steps.finish is StepStatus.UNKNOWN

    def test_failed_job_steps(self):
        raw = "FAILED|2024-01-01T00:00:00|2024-01-01T00:01:00|2024-01-01T00:02:00|00:01:00|gpu|n1|gpu:1|4||1:0"
        record = parse_job_report(raw, "10")

        assert record.steps.start is StepStatus.ERROR
        assert record.steps.finish is StepStatus.ERROR

    def test_pending_counts_as_submitted(self):
        record = parse_job_report("PENDING|Unknown|Unknown|Unknown|00:00:00|gpu|None assigned||4|Priority|0:0", "11")

        assert record.steps.submit is StepStatus.SUCCESS
        assert record.steps.start is StepStatus.UNKNOWN
        assert record.reason == "Priority"

    def test_empty_output_is_not_found(self):
        with pytest.raises(JobNotFoundError, match="Job 99 not found"):
            parse_job_report("", "99")
        with pytest.raises(JobNotFoundError):
            parse_job_report("\n  \n", "99")

    def test_missing_state_is_parse_error(self):
        with pytest.raises(ParseError):
            parse_job_report("|2024-01-01T00:00:00|Unknown", "12")

    def test_unrecognised_state_keeps_raw_text(self):
        record = parse_job_report("REVOKED|2024-01-01T00:00:00|Unknown|Unknown", "13")

        assert record.state is None
        assert record.raw_state == "REVOKED"
        assert record.to_dict()["state"] == "REVOKED"

    def test_to_dict_shape(self):
        data = parse_job_report(CANCELLED_LINE, "42").to_dict()

        assert data["jobId"] == "42"
        assert data["state"] == "CANCELLED"
        assert data["allocGRES"] == "gpu:1"
        assert data["nCPUS"] == "4"
        assert data["steps"] == {"submit": "success", "start": "unknown", "finish": "unknown"}


class TestStepStatus:

    def test_absent_start_is_unknown(self):
        record = JobRecord(job_id="1", state=JobState.FAILED, raw_state="FAILED", start=None)
        assert check_start_status(record) is StepStatus.UNKNOWN


class TestParseJobState:

    def test_first_row(self):
        assert parse_job_state("RUNNING\nCOMPLETED\n") is JobState.RUNNING

    def test_empty(self):
        assert parse_job_state("") is None


class TestParseRecentJobs:

    def test_array_job_with_qualifier(self):
        jobs = parse_recent_jobs("123_4|CANCELLED by 1001\n")

        assert len(jobs) == 1
        assert jobs[0].to_dict() == {"jobId": "123_4", "state": "CANCELLED"}

    def test_incomplete_rows_dropped(self):
        raw = "100|RUNNING\n101\n|FAILED\n102|\n\n103|COMPLETED\n"
        jobs = parse_recent_jobs(raw)

        assert [j.job_id for j in jobs] == ["100", "103"]
        assert jobs[1].state is JobState.COMPLETE

    def test_empty_output(self):
        assert parse_recent_jobs("") == []


class TestParsePartitions:

    def test_user_block_wins(self):
        raw = "cpu\ngpu*\nbig\n###\ngpu\n"
        assert parse_partitions(raw) == ["gpu"]

    def test_empty_user_block_means_all(self):
        raw = "cpu\ngpu*\nbig\n###\n"
        assert parse_partitions(raw) == ["cpu", "gpu", "big"]

    def test_duplicates_removed(self):
        raw = "cpu\n###\ngpu\ngpu\ncpu\n"
        assert parse_partitions(raw) == ["gpu", "cpu"]

    def test_no_partitions_at_all(self):
        with pytest.raises(ParseError):
            parse_partitions("###\n")


class TestCommandBuilders:

    def test_report_command(self):
        cmd = report_command("123")
        assert cmd[0] == "sacct"
        assert "--parsable2" in cmd
        assert "--jobs=123" in cmd
        assert any(arg.startswith("--format=State,Submit,Start,End") for arg in cmd)

    def test_recent_jobs_command(self):
        cmd = recent_jobs_command("alice", "annotat3dweb")
        assert "--user=alice" in cmd
        assert "--name=annotat3dweb" in cmd

    def test_user_associations_command(self):
        assert user_associations_command("alice")[-1] == "users=alice"

    @pytest.mark.parametrize("job_id", ["123", "123_4", "123.batch", " 55 "])
    def test_valid_job_ids(self, job_id):
        assert validate_job_id(job_id) == job_id.strip()

    @pytest.mark.parametrize("job_id", ["", "abc", "1; rm -rf ~", "$(id)", "12 34"])
    def test_rejected_job_ids(self, job_id):
        with pytest.raises(SubmissionValidationError):
            scancel_command(job_id)

    def test_rejected_user(self):
        with pytest.raises(SubmissionValidationError):
            recent_jobs_command("alice;id", "annotat3dweb")
