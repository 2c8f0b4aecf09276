"""Result objects returned by deployment and provisioning operations."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class DeploymentOutcome:
    """Ordered log plus terminal status for a single operation.

    An outcome is created fresh for every invocation and handed to the caller
    once the operation returns. ``succeeded`` and ``summary`` may be set
    provisionally and overwritten before return; the log only ever grows.
    """

    succeeded: bool = False
    summary: str = ""
    log: list[str] = field(default_factory=list)
    failure: BaseException | None = None
    details: dict[str, object] = field(default_factory=dict)

    def add_log(self, message: str) -> None:
        """Append *message* to the ordered log."""
        self.log.append(message)

    def succeed(self, summary: str) -> None:
        """Mark the outcome successful with *summary*."""
        self.succeeded = True
        self.summary = summary
        self.failure = None

    def fail(self, summary: str, exc: BaseException | None = None) -> None:
        """Mark the outcome failed, logging *summary* and keeping *exc*."""
        self.succeeded = False
        self.summary = summary
        if exc is not None:
            self.failure = exc
        self.add_log(summary)

    @property
    def warnings(self) -> list[str]:
        """Return log lines recorded as warnings."""
        return [line for line in self.log if line.startswith("Warning:")]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "succeeded": self.succeeded,
            "summary": self.summary,
            "log": list(self.log),
            "failure": (
                f"{type(self.failure).__name__}: {self.failure}"
                if self.failure is not None
                else None
            ),
            "details": {
                key: str(value) if not isinstance(value, (str, int, float, bool)) else value
                for key, value in self.details.items()
                if value is not None
            },
        }


__all__ = ["DeploymentOutcome"]
