"""Tests for the error taxonomy."""

import pytest

from annolaunch.errors import (
    AuthenticationError,
    CommandError,
    JobNotFoundError,
    MissingCredentialsError,
    NotFoundError,
    SubmissionValidationError,
    TransportError,
)


class TestCommandErrorFromStderr:

    def test_plain_text(self):
        err = CommandError.from_stderr("sbatch: error: invalid partition\n")
        assert err.message == "sbatch: error: invalid partition"
        assert err.stderr == "sbatch: error: invalid partition\n"

    def test_context_prefix(self):
        err = CommandError.from_stderr("boom", "sbatch failed")
        assert err.message == "sbatch failed: boom"

    @pytest.mark.parametrize("stderr,expected", [
        ('{"errors": [{"description": "Invalid account"}]}', "Invalid account"),
        ('{"errors": [{"error": "a"}, {"error": "b"}]}', "a; b"),
        ('{"error": "Access denied"}', "Access denied"),
        ('{"message": "Rate limited"}', "Rate limited"),
        ('[{"description": "x"}]', "x"),
    ])
    def test_json_bodies(self, stderr, expected):
        assert CommandError.from_stderr(stderr).message == expected

    def test_malformed_json_falls_back(self):
        assert CommandError.from_stderr('{"error": ').message == '{"error":'

    def test_json_without_known_keys_falls_back(self):
        assert CommandError.from_stderr('{"code": 3}').message == '{"code": 3}'


class TestHierarchy:

    def test_authentication_is_transport(self):
        assert issubclass(AuthenticationError, TransportError)
        assert AuthenticationError("x").kind == "authentication"

    def test_job_not_found(self):
        err = JobNotFoundError("42")
        assert isinstance(err, NotFoundError)
        assert err.job_id == "42"
        assert str(err) == "Job 42 not found"

    def test_validation_is_value_error(self):
        err = SubmissionValidationError("bad", [{"field": "gpus", "message": "m"}])
        assert isinstance(err, ValueError)
        assert err.errors[0]["field"] == "gpus"
        assert SubmissionValidationError("bad").errors == []

    def test_missing_credentials(self):
        err = MissingCredentialsError("alice")
        assert err.message == "No ssh keys found"
        assert err.username == "alice"
