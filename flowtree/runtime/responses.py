"""
responses.py - Structured agent responses and tolerant extraction from stdout.

Agents answer in one of three JSON shapes:

    ProcessOutcome    - leaf (childless) nodes
    DecisionOutcome   - branching nodes; `answer` selects the child route
    ValidationVerdict - validation calls

The caller always says which shape it expects; the content is never sniffed.
Agents tend to wrap the payload in commentary or markdown fences, so
extraction is tolerant:

    1. strip surrounding whitespace
    2. strip a surrounding ``` fence
    3. decode the whole remaining text
    4. else decode from the last '{' to the end of the text
    5. else raise ResponseParseError naming the expected shape

Usage:
    from flowtree.runtime.responses import ResponseKind, parse_response

    verdict = parse_response(stdout, ResponseKind.VALIDATION)
    if not verdict.fully_completed:
        critique = verdict.critique()
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, ClassVar, Dict, List, Type, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ResponseParseError

logger = logging.getLogger(__name__)

GENERIC_CRITIQUE = "Validation did not pass (fully_completed: false)."


class ResponseKind(str, Enum):
    """Which response shape a call expects."""

    PROCESS = "process"
    DECISION = "decision"
    VALIDATION = "validation"


class _AgentResponse(BaseModel):
    """Common decoding rules: unknown keys ignored, JSON null means 'absent'."""

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, coerce_numbers_to_str=True
    )

    kind: ClassVar[ResponseKind]

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ProcessOutcome(_AgentResponse):
    """Result of a process (leaf) step."""

    kind: ClassVar[ResponseKind] = ResponseKind.PROCESS

    completed: bool = False
    seconds: float = Field(default=0.0, alias="secs_taken")
    tokens: float = Field(default=0.0, alias="tokens_used")
    comments: List[str] = Field(default_factory=list)


class DecisionOutcome(_AgentResponse):
    """Result of a decision (branching) step."""

    kind: ClassVar[ResponseKind] = ResponseKind.DECISION

    choices: List[str] = Field(default_factory=list)
    answer: str = ""
    reasons: List[str] = Field(default_factory=list)


class ValidationVerdict(_AgentResponse):
    """Result of a validation call."""

    kind: ClassVar[ResponseKind] = ResponseKind.VALIDATION

    fully_completed: bool = False
    partially_completed: bool = False
    should_retry: bool = False
    warnings: List[str] = Field(default_factory=list)

    def critique(self) -> str:
        """Summary of why this verdict failed, for the next retry prompt."""
        warnings = [w.strip() for w in self.warnings if w and w.strip()]
        if warnings:
            return "\n".join(warnings)
        return GENERIC_CRITIQUE


ParsedResponse = Union[ProcessOutcome, DecisionOutcome, ValidationVerdict]

_MODELS: Dict[ResponseKind, Type[_AgentResponse]] = {
    ResponseKind.PROCESS: ProcessOutcome,
    ResponseKind.DECISION: DecisionOutcome,
    ResponseKind.VALIDATION: ValidationVerdict,
}

_FENCE = "```"


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown fence (with optional language tag)."""
    if not text.startswith(_FENCE):
        return text
    newline = text.find("\n")
    body = text[newline + 1 :] if newline >= 0 else text[len(_FENCE) :]
    body = body.rstrip()
    if body.endswith(_FENCE):
        body = body[: -len(_FENCE)]
    return body.strip()


def _decode(model: Type[_AgentResponse], text: str) -> _AgentResponse:
    return model.model_validate(json.loads(text))


def parse_response(stdout: str, kind: ResponseKind) -> ParsedResponse:
    """Extract the expected response shape from free-form agent output.

    Raises:
        ResponseParseError: No JSON object of the expected shape was found.
    """
    kind = ResponseKind(kind)
    model = _MODELS[kind]
    text = strip_code_fence((stdout or "").strip())

    try:
        return _decode(model, text)  # type: ignore[return-value]
    except ValueError as e:
        last_error: Exception = e

    start = text.rfind("{")
    if start >= 0:
        try:
            parsed = _decode(model, text[start:])
            logger.debug(
                "Extracted %s response from offset %d of agent output", kind.value, start
            )
            return parsed  # type: ignore[return-value]
        except ValueError as e:
            last_error = e

    raise ResponseParseError(kind.value, str(last_error).splitlines()[0] if str(last_error) else "")


def parse_process_response(stdout: str) -> ProcessOutcome:
    return parse_response(stdout, ResponseKind.PROCESS)  # type: ignore[return-value]


def parse_decision_response(stdout: str) -> DecisionOutcome:
    return parse_response(stdout, ResponseKind.DECISION)  # type: ignore[return-value]


def parse_validation_response(stdout: str) -> ValidationVerdict:
    return parse_response(stdout, ResponseKind.VALIDATION)  # type: ignore[return-value]
