"""
engine.py - Tree traversal with per-node run / validate / retry.

Per node:

    run ──> (leaf with validation text?) ──no──> descend
             │yes
             v
          validate ──pass──> done
             │fail
             v
          retry ─> validate ─> ... until pass or the retry budget is spent

A spent retry budget is a normal terminal outcome (NodeStatus
VALIDATION_EXHAUSTED), not an exception. Anything else going wrong (missing
or unknown agent, invocation failure, unparseable output) is a FlowtreeError
that aborts the traversal; execute() still returns the trace gathered so far.

Branching nodes are never validated. After their run the output is parsed as
a DecisionOutcome and `answer` picks the child route; an unmatched answer
ends the traversal there without error.

Usage:
    engine = WorkflowEngine(get_registry(), ShellCommandRunner(), work_dir=".")
    report = engine.execute(tree.root)
    report.raise_for_error()
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Type, Union

from flowtree.config.agent_registry import AgentDefinition, AgentRegistry

from .errors import (
    FlowtreeError,
    NoAgentError,
    NoRetryAgentError,
    NoValidateAgentError,
)
from .node_config import ExecutableNode, ExecutableTree
from .prompts import (
    build_command,
    build_retry_prompt,
    build_run_prompt,
    build_validate_prompt,
)
from .recorder import RunRecorder, TraceEntry
from .responses import (
    ValidationVerdict,
    parse_decision_response,
    parse_response,
    parse_validation_response,
)
from .runner import CommandRunner, InvocationResult

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Where in a node's processing an error happened."""

    RUN = "run"
    VALIDATE = "validate"
    RETRY = "retry"
    DESCEND = "descend"


class NodeStatus(str, Enum):
    VALID = "valid"
    VALIDATION_EXHAUSTED = "validation_exhausted"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    VALIDATION_EXHAUSTED = "validation_exhausted"
    FAILED = "failed"


@dataclass
class ValidationResult:
    """A validation invocation and its parsed verdict."""

    invocation: InvocationResult
    verdict: ValidationVerdict

    @property
    def passed(self) -> bool:
        return self.verdict.fully_completed


@dataclass
class NodeResult:
    """Outcome of processing one node.

    run holds the latest run or retry invocation; validation the latest
    validation. Both may be None if processing failed early.
    """

    node: ExecutableNode
    run: Optional[InvocationResult] = None
    validation: Optional[ValidationResult] = None
    status: Optional[NodeStatus] = None

    @property
    def valid(self) -> bool:
        return self.status is NodeStatus.VALID

    @property
    def output(self) -> str:
        return self.run.stdout if self.run is not None else ""


@dataclass
class NodeRuntimeState:
    """Mutable per-node execution state, kept outside ResolvedConfig."""

    attempts: int = 0


@dataclass
class ExecutionReport:
    """Result of one traversal.

    Attributes:
        chart: Diagram title the traversal ran for.
        entries: Trace entries, one per visited node, in visit order.
        results: Node results, parallel to entries.
        status: completed, validation_exhausted or failed.
        error: The fatal error when status is failed.
        invocations: Number of agent invocations made.
    """

    chart: str = ""
    entries: List[TraceEntry] = field(default_factory=list)
    results: List[NodeResult] = field(default_factory=list)
    status: RunStatus = RunStatus.COMPLETED
    error: Optional[FlowtreeError] = None
    invocations: int = 0

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class WorkflowEngine:
    """Walks an executable tree, invoking agents through a CommandRunner.

    Args:
        registry: Agent registry used to resolve codenames.
        runner: Execution collaborator.
        work_dir: Working directory for agent processes.
        default_timeout: Seconds per invocation when a node sets none
            (None = unbounded).
        recorder: Trace sink; a fresh RunRecorder when omitted.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        runner: CommandRunner,
        *,
        work_dir: Optional[Union[str, Path]] = None,
        default_timeout: Optional[float] = None,
        recorder: Optional[RunRecorder] = None,
    ):
        self.registry = registry
        self.runner = runner
        self.work_dir = work_dir
        self.default_timeout = default_timeout
        self.recorder = recorder if recorder is not None else RunRecorder()
        self.invocations = 0
        self._state: Dict[int, NodeRuntimeState] = {}

    # -------------------------------------------------------------------------
    # Runtime state
    # -------------------------------------------------------------------------

    def _state_for(self, node: ExecutableNode) -> NodeRuntimeState:
        return self._state.setdefault(node.index, NodeRuntimeState())

    def attempts(self, node: ExecutableNode) -> int:
        """Retry attempts consumed so far by node."""
        state = self._state.get(node.index)
        return state.attempts if state is not None else 0

    # -------------------------------------------------------------------------
    # Single invocations
    # -------------------------------------------------------------------------

    @contextmanager
    def _phase(self, node: ExecutableNode, phase: Phase) -> Iterator[None]:
        try:
            yield
        except FlowtreeError as e:
            e.with_context(node.name, phase.value)
            raise

    def _agent(self, codename: str, missing: Type[NoAgentError]) -> AgentDefinition:
        if not codename.strip():
            raise missing()
        return self.registry.lookup(codename)

    def _invoke(
        self, node: ExecutableNode, agent: AgentDefinition, prompt: str
    ) -> InvocationResult:
        timeout = node.config.timeout or self.default_timeout
        command = build_command(agent.template, prompt)
        self.invocations += 1
        logger.debug("Invoking %s for node %r", agent.codename, node.name)
        result = self.runner.invoke(command, self.work_dir, timeout)
        self.recorder.append_output(result.stdout)
        return result

    def run_node(self, node: ExecutableNode) -> InvocationResult:
        """Run the node's task prompt with its run agent."""
        with self._phase(node, Phase.RUN):
            agent = self._agent(node.config.agent, NoAgentError)
            return self._invoke(node, agent, build_run_prompt(node))

    def run_validation(self, node: ExecutableNode, output: str) -> ValidationResult:
        """Validate output produced for node; passes iff fully_completed."""
        with self._phase(node, Phase.VALIDATE):
            agent = self._agent(node.config.validate_agent, NoValidateAgentError)
            invocation = self._invoke(node, agent, build_validate_prompt(node, output))
            verdict = parse_validation_response(invocation.stdout)
            return ValidationResult(invocation=invocation, verdict=verdict)

    def run_retry(self, node: ExecutableNode, critiques: Sequence[str]) -> InvocationResult:
        """Consume one retry attempt; the output must parse as the node's kind."""
        with self._phase(node, Phase.RETRY):
            self._state_for(node).attempts += 1
            agent = self._agent(node.config.retry_agent, NoRetryAgentError)
            invocation = self._invoke(node, agent, build_retry_prompt(node, critiques))
            parse_response(invocation.stdout, node.kind)
            return invocation

    # -------------------------------------------------------------------------
    # Node state machine
    # -------------------------------------------------------------------------

    def process_node(self, node: ExecutableNode) -> NodeResult:
        """Run, validate and retry a single node (no descent)."""
        result = NodeResult(node=node)
        self._process(node, result)
        return result

    def _process(self, node: ExecutableNode, result: NodeResult) -> None:
        logger.info("Running node %r (%s)", node.name, node.kind.value)
        result.run = self.run_node(node)

        if not node.should_validate:
            result.status = NodeStatus.VALID
            return

        result.validation = self.run_validation(node, result.run.stdout)
        if result.validation.passed:
            result.status = NodeStatus.VALID
            return

        critiques: List[str] = [result.validation.verdict.critique()]
        limit = node.config.max_retries
        while self.attempts(node) < limit:
            logger.info(
                "Validation failed for node %r; retry %d of %d",
                node.name,
                self.attempts(node) + 1,
                limit,
            )
            retry = self.run_retry(node, critiques)
            validation = self.run_validation(node, retry.stdout)
            result.run = retry
            result.validation = validation
            if validation.passed:
                result.status = NodeStatus.VALID
                return
            critiques.append(validation.verdict.critique())

        logger.warning(
            "Node %r did not pass validation after %d retries", node.name, limit
        )
        result.status = NodeStatus.VALIDATION_EXHAUSTED

    def _descend(self, node: ExecutableNode, result: NodeResult) -> Optional[ExecutableNode]:
        if node.is_leaf:
            return None
        with self._phase(node, Phase.DESCEND):
            decision = parse_decision_response(result.output)
        child = node.children.get(decision.answer)
        if child is None:
            child = node.children.get(decision.answer.strip())
        if child is None:
            logger.warning(
                "Node %r answered %r, which matches no route %s; stopping",
                node.name,
                decision.answer,
                sorted(node.children),
            )
        return child

    def _record(self, result: NodeResult) -> None:
        node = result.node
        self.recorder.record(
            TraceEntry(
                node_name=node.name,
                node_kind=node.kind.value,
                response=result.output.strip(),
                validation=(
                    result.validation.verdict.to_dict()
                    if result.validation is not None
                    else None
                ),
                retries=self.attempts(node),
                status=result.status.value if result.status is not None else "",
            )
        )

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    def execute(
        self, root: Union[ExecutableNode, ExecutableTree, None]
    ) -> ExecutionReport:
        """Walk the tree from root until a leaf, an unmatched answer or an error.

        Retry attempts and the invocation count start from zero on every call.
        The recorder keeps accumulating; the report carries only this walk's
        entries.
        """
        if isinstance(root, ExecutableTree):
            root = root.root
        report = ExecutionReport(chart=self.recorder.chart_name)
        self._state = {}
        self.invocations = 0
        first_entry = len(self.recorder.entries)
        node = root

        try:
            while node is not None:
                result = NodeResult(node=node)
                try:
                    self._process(node, result)
                finally:
                    self._record(result)
                    report.results.append(result)
                if result.status is NodeStatus.VALIDATION_EXHAUSTED:
                    report.status = RunStatus.VALIDATION_EXHAUSTED
                    break
                node = self._descend(node, result)
        except FlowtreeError as e:
            logger.error("Run aborted: %s", e)
            report.status = RunStatus.FAILED
            report.error = e
            self.recorder.flush()

        report.entries = self.recorder.entries[first_entry:]
        report.invocations = self.invocations
        return report
