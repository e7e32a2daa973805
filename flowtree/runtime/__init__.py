# flowtree/runtime package
# Node configuration, prompt composition, response parsing, agent invocation
# and the workflow engine. Import engine symbols from flowtree.runtime.engine.

from .errors import (
    FlowtreeError,
    InvocationError,
    MalformedInputError,
    NoAgentError,
    NoRetryAgentError,
    NoValidateAgentError,
    ResponseParseError,
    UnknownAgentError,
)
from .responses import (
    DecisionOutcome,
    ProcessOutcome,
    ResponseKind,
    ValidationVerdict,
    parse_response,
)

__all__ = [
    "DecisionOutcome",
    "FlowtreeError",
    "InvocationError",
    "MalformedInputError",
    "NoAgentError",
    "NoRetryAgentError",
    "NoValidateAgentError",
    "ProcessOutcome",
    "ResponseKind",
    "ResponseParseError",
    "UnknownAgentError",
    "ValidationVerdict",
    "parse_response",
]
