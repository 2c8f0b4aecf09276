"""Tests for the deployment outcome record."""
from __future__ import annotations

from pathlib import Path

from sitedeploy.outcome import DeploymentOutcome


def test_fail_logs_summary_and_keeps_exception() -> None:
    """Failing records the summary in the log and preserves the fault."""
    outcome = DeploymentOutcome(summary="Starting")
    outcome.add_log("step one")
    error = RuntimeError("boom")

    outcome.fail("It broke.", error)

    assert outcome.succeeded is False
    assert outcome.summary == "It broke."
    assert outcome.failure is error
    assert outcome.log == ["step one", "It broke."]


def test_succeed_clears_previous_failure() -> None:
    """A provisional failure can be overwritten by a final success."""
    outcome = DeploymentOutcome()
    outcome.fail("provisional", ValueError("x"))

    outcome.succeed("Done.")

    assert outcome.succeeded is True
    assert outcome.failure is None
    assert outcome.summary == "Done."


def test_warnings_and_serialisation() -> None:
    """Warning lines are filtered and details become JSON-safe."""
    outcome = DeploymentOutcome()
    outcome.add_log("Deleted file: a.txt")
    outcome.add_log("Warning: Could not delete file b.txt: busy")
    outcome.details["backup"] = Path("/tmp/site_backup.zip")
    outcome.details["extracted"] = 3
    outcome.details["missing"] = None
    outcome.fail("Nope.", OSError("denied"))

    payload = outcome.to_dict()

    assert outcome.warnings == ["Warning: Could not delete file b.txt: busy"]
    assert payload["succeeded"] is False
    assert payload["failure"] == "OSError: denied"
    assert payload["details"] == {"backup": "/tmp/site_backup.zip", "extracted": 3}
    assert payload["log"][-1] == "Nope."
