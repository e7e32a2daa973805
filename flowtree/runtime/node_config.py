"""
node_config.py - Per-node effective configuration.

Each tree node gets a ResolvedConfig computed once, before execution, from
its own tags and metadata layered over the process-wide RunDefaults. Nothing
is inherited from parent nodes.

Precedence per field (highest first):
    1. node metadata variable   (keys matched case- and snake/camel-insensitively)
    2. a tag naming a known agent codename (run agent only)
    3. RunDefaults
    4. hardcoded fallback       (retries 3, timeout 0 = caller default, else "")

The NoValidation tag (any case, any separators) empties the validation text
regardless of everything above.

Node metadata variables:
    cli / codename    agent that runs the node
    validate_prompt   custom validation instruction
    validate_cli      agent that validates the node
    retries           max retry attempts
    retry_cli         agent that runs retries
    timeout           seconds per agent invocation
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from flowtree.config.settings import DEFAULT_RETRY_COUNT, RunDefaults
from flowtree.document.types import RawNode

from .responses import ResponseKind

logger = logging.getLogger(__name__)

TAG_NO_VALIDATION = "NoValidation"


class NodeVariable(str, Enum):
    """ResolvedConfig field a metadata variable sets."""

    CLI = "cli"
    VALIDATE_PROMPT = "validate_prompt"
    VALIDATE_CLI = "validate_cli"
    RETRIES = "retries"
    RETRY_CLI = "retry_cli"
    TIMEOUT = "timeout"


# Canonical (snake_case) metadata key -> field. Earlier keys win when two
# keys target the same field.
NODE_VARIABLES: Dict[str, NodeVariable] = {
    "cli": NodeVariable.CLI,
    "codename": NodeVariable.CLI,
    "validate_prompt": NodeVariable.VALIDATE_PROMPT,
    "validate_cli": NodeVariable.VALIDATE_CLI,
    "retries": NodeVariable.RETRIES,
    "retry_cli": NodeVariable.RETRY_CLI,
    "timeout": NodeVariable.TIMEOUT,
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_TAG_SEPARATORS = re.compile(r"[\s_\-]+")


def canonical_metadata_key(key: str) -> str:
    """validateCli, validate_cli, Validate-CLI -> validate_cli."""
    key = _CAMEL_BOUNDARY.sub("_", key.strip())
    return re.sub(r"[\s\-]+", "_", key).lower()


def canonical_tag(tag: str) -> str:
    """NoValidation, no_validation, no-validation -> novalidation."""
    return _TAG_SEPARATORS.sub("", tag.strip()).lower()


def has_tag(node: RawNode, tag: str) -> bool:
    wanted = canonical_tag(tag)
    return any(canonical_tag(t) == wanted for t in node.tags)


def metadata_variables(metadata: Mapping[str, str]) -> Dict[NodeVariable, Tuple[str, str]]:
    """Known variables present (non-empty) in metadata.

    Returns field -> (original key, stripped value). Unknown keys are ignored.
    """
    found: Dict[NodeVariable, Tuple[str, str]] = {}
    by_canonical: Dict[str, Tuple[str, str]] = {}
    for key, value in metadata.items():
        canon = canonical_metadata_key(key)
        if canon in NODE_VARIABLES and canon not in by_canonical:
            stripped = (value or "").strip()
            if stripped:
                by_canonical[canon] = (key, stripped)
    for canon, variable in NODE_VARIABLES.items():
        if canon in by_canonical and variable not in found:
            found[variable] = by_canonical[canon]
    return found


def _parse_count(key: str, value: str) -> Optional[int]:
    try:
        count = int(value)
    except ValueError:
        logger.debug("Ignoring non-integer metadata %s=%r", key, value)
        return None
    if count < 0:
        logger.debug("Ignoring negative metadata %s=%d", key, count)
        return None
    return count


@dataclass(frozen=True)
class ResolvedConfig:
    """Effective configuration for one node. Immutable once built.

    Attributes:
        agent: Codename that runs the node ("" = none).
        validate_agent: Codename that validates the node ("" = none).
        retry_agent: Codename that runs retries ("" = none).
        validate_prompt: Validation instruction ("" = node does not validate).
        max_retries: Retry budget after a failed validation (always > 0).
        timeout: Seconds per invocation (0 = caller default).
    """

    agent: str = ""
    validate_agent: str = ""
    retry_agent: str = ""
    validate_prompt: str = ""
    max_retries: int = DEFAULT_RETRY_COUNT
    timeout: int = 0


def resolve_node_config(
    node: RawNode,
    defaults: Optional[RunDefaults] = None,
    known_agents: Iterable[str] = (),
) -> ResolvedConfig:
    """Compute the effective configuration for a single node.

    Args:
        node: The raw node (only its tags and metadata are read).
        defaults: Process-wide defaults; None means no defaults.
        known_agents: Registered agent codenames, for tag recognition.
    """
    defaults = defaults or RunDefaults()
    codenames: FrozenSet[str] = frozenset(c.strip().upper() for c in known_agents)
    variables = metadata_variables(node.metadata)

    def codename(variable: NodeVariable, tag_value: str, default: str) -> str:
        if variable in variables:
            return variables[variable][1].upper()
        return (tag_value or default).strip().upper()

    tag_agent = ""
    for tag in node.tags:
        upper = tag.strip().upper()
        if upper in codenames:
            tag_agent = upper
            break

    retries = defaults.retries
    if NodeVariable.RETRIES in variables:
        parsed = _parse_count(*variables[NodeVariable.RETRIES])
        if parsed is not None:
            retries = parsed

    timeout = defaults.timeout
    if NodeVariable.TIMEOUT in variables:
        parsed = _parse_count(*variables[NodeVariable.TIMEOUT])
        if parsed:
            timeout = parsed

    validate_prompt = defaults.validate_prompt
    if NodeVariable.VALIDATE_PROMPT in variables:
        validate_prompt = variables[NodeVariable.VALIDATE_PROMPT][1]
    if has_tag(node, TAG_NO_VALIDATION):
        validate_prompt = ""

    config = ResolvedConfig(
        agent=codename(NodeVariable.CLI, tag_agent, defaults.cli),
        validate_agent=codename(NodeVariable.VALIDATE_CLI, "", defaults.validate_cli),
        retry_agent=codename(NodeVariable.RETRY_CLI, "", defaults.retry_cli),
        validate_prompt=validate_prompt.strip(),
        max_retries=retries if retries > 0 else DEFAULT_RETRY_COUNT,
        timeout=max(timeout, 0),
    )
    logger.debug("Resolved config for node %r: %s", node.id or node.name, config)
    return config


# =============================================================================
# Executable tree
# =============================================================================


@dataclass(eq=False)
class ExecutableNode:
    """A raw node paired with its resolved configuration.

    index is the node's position in the owning tree's arena (pre-order); the
    engine keys per-node runtime state on it.
    """

    index: int
    raw: RawNode
    config: ResolvedConfig
    children: Dict[str, "ExecutableNode"] = field(default_factory=dict)

    @property
    def prompt(self) -> str:
        return self.raw.text

    @property
    def name(self) -> str:
        return self.raw.name

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def kind(self) -> ResponseKind:
        """Leaves answer with a process outcome, branching nodes with a decision."""
        return ResponseKind.PROCESS if self.is_leaf else ResponseKind.DECISION

    @property
    def should_validate(self) -> bool:
        """Only leaves with validation text are validated."""
        return self.is_leaf and bool(self.config.validate_prompt.strip())


@dataclass
class ExecutableTree:
    """Resolved tree plus its node arena (pre-order)."""

    root: Optional[ExecutableNode] = None
    nodes: List[ExecutableNode] = field(default_factory=list)

    def __iter__(self) -> Iterator[ExecutableNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)


def build_executable_tree(
    root: Optional[RawNode],
    defaults: Optional[RunDefaults] = None,
    known_agents: Iterable[str] = (),
) -> ExecutableTree:
    """Resolve every node of a raw tree, eagerly, top-down."""
    tree = ExecutableTree()
    if root is None:
        return tree
    codenames = frozenset(c.strip().upper() for c in known_agents)

    def resolve(raw: RawNode) -> ExecutableNode:
        node = ExecutableNode(
            index=len(tree.nodes),
            raw=raw,
            config=resolve_node_config(raw, defaults, codenames),
        )
        tree.nodes.append(node)
        for route, child in raw.children.items():
            node.children[route] = resolve(child)
        return node

    tree.root = resolve(root)
    return tree
