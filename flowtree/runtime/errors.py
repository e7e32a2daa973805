"""
errors.py - Exception taxonomy for flowtree.

Every failure the library reports derives from FlowtreeError so callers can
catch one type at the top level. Workflow errors carry the node name and the
phase (run, validate, retry, descend) they happened in; the engine fills those
in as the error propagates out of a node.

Validation running out of retries is NOT an exception. It is a
normal terminal outcome reported through NodeStatus / ExecutionReport.
"""

from __future__ import annotations

from typing import Optional


class FlowtreeError(Exception):
    """Base class for all flowtree errors."""

    def __init__(
        self,
        message: str,
        *,
        node_name: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_name = node_name
        self.phase = phase

    def with_context(self, node_name: str, phase: str) -> "FlowtreeError":
        """Attach node/phase context unless an inner frame already did."""
        if self.node_name is None:
            self.node_name = node_name
        if self.phase is None:
            self.phase = phase
        return self

    def __str__(self) -> str:
        if self.node_name is None and self.phase is None:
            return self.message
        where = []
        if self.node_name is not None:
            where.append(f"node {self.node_name!r}")
        if self.phase is not None:
            where.append(f"phase {self.phase}")
        return f"{self.message} ({', '.join(where)})"


class MalformedInputError(FlowtreeError):
    """The flowchart export could not be parsed."""


class NoAgentError(FlowtreeError):
    """No agent codename on the node and no process-wide default."""

    role = "run"

    def __init__(self, message: Optional[str] = None, **kwargs):
        super().__init__(
            message or f"no {self.role} agent codename for node and no default",
            **kwargs,
        )


class NoValidateAgentError(NoAgentError):
    role = "validate"


class NoRetryAgentError(NoAgentError):
    role = "retry"


class UnknownAgentError(FlowtreeError):
    """The codename is not present in the agent registry."""

    def __init__(self, name: str, **kwargs):
        super().__init__(f"unknown agent: {name}", **kwargs)
        self.name = name


class InvocationError(FlowtreeError):
    """The agent process could not be started or timed out."""

    def __init__(self, message: str, *, timed_out: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.timed_out = timed_out


class ResponseParseError(FlowtreeError):
    """Agent output held no extractable JSON of the expected shape."""

    def __init__(self, expected: str, detail: str = "", **kwargs):
        message = f"could not parse {expected} response from agent output"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, **kwargs)
        self.expected = expected
