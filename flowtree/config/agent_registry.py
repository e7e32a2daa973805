"""
agent_registry.py - Registry of agent CLIs loaded from agents.yaml

Agents are addressed by codename (e.g. CLAUDE), display name (e.g.
"Claude CLI") or raw command (e.g. claude); lookup is case-insensitive on all
three.

Usage:
    from flowtree.config.agent_registry import get_registry

    registry = get_registry()
    agent = registry.lookup("claude")
    command = agent.template  # 'claude -p "<prompt>"'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Tuple

import yaml

from flowtree.runtime.errors import UnknownAgentError
from flowtree.runtime.prompts import PROMPT_PLACEHOLDER

logger = logging.getLogger(__name__)

_CONFIG_FILE = Path(__file__).parent / "agents.yaml"


@dataclass(frozen=True)
class AgentDefinition:
    """A single agent CLI.

    Attributes:
        codename: Uppercase alias used in settings, tags and metadata.
        name: Display name.
        command: Executable name.
        template: Shell command template containing PROMPT_PLACEHOLDER.
        env_keys: Environment variables carrying the agent's API key(s).
        key_url: Where to obtain an API key.
        install: Install hint shown by the CLI.
    """

    codename: str
    name: str
    command: str
    template: str
    env_keys: Tuple[str, ...] = ()
    key_url: str = ""
    install: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.codename


def _normalize(value: str) -> str:
    return value.strip().lower()


class AgentRegistry:
    """Case-insensitive index over agent definitions."""

    def __init__(self, agents: Iterable[AgentDefinition]):
        self._agents: List[AgentDefinition] = []
        self._index: Dict[str, AgentDefinition] = {}
        for agent in agents:
            agent = AgentDefinition(
                codename=agent.codename.strip().upper(),
                name=agent.name,
                command=agent.command,
                template=agent.template,
                env_keys=tuple(agent.env_keys),
                key_url=agent.key_url,
                install=agent.install,
            )
            if PROMPT_PLACEHOLDER not in agent.template:
                logger.warning(
                    "Agent %s template has no %s placeholder; prompts will not be passed",
                    agent.codename,
                    PROMPT_PLACEHOLDER,
                )
            self._agents.append(agent)
            for key in (agent.name, agent.command, agent.codename):
                if key:
                    self._index[_normalize(key)] = agent

    @classmethod
    def from_yaml(cls, path: Path = _CONFIG_FILE) -> "AgentRegistry":
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        agents = []
        for entry in data.get("agents", []):
            agents.append(
                AgentDefinition(
                    codename=str(entry["codename"]),
                    name=str(entry.get("name", "")),
                    command=str(entry.get("command", "")),
                    template=str(entry.get("template", entry.get("command", ""))),
                    env_keys=tuple(str(k) for k in entry.get("env_keys", []) or []),
                    key_url=str(entry.get("key_url", "")),
                    install=str(entry.get("install", "")),
                )
            )
        logger.debug("Loaded %d agents from %s", len(agents), path)
        return cls(agents)

    def __iter__(self) -> Iterator[AgentDefinition]:
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and _normalize(name) in self._index

    def lookup(self, name: str) -> AgentDefinition:
        """Find an agent by codename, display name or command."""
        agent = self._index.get(_normalize(name))
        if agent is None:
            raise UnknownAgentError(name)
        return agent

    def codenames(self) -> FrozenSet[str]:
        """Uppercase codenames of all registered agents."""
        return frozenset(a.codename for a in self._agents if a.codename)

    def env_keys(self) -> Tuple[str, ...]:
        """All API-key environment variable names, deduplicated, in order."""
        seen: List[str] = []
        for agent in self._agents:
            for key in agent.env_keys:
                if key not in seen:
                    seen.append(key)
        return tuple(seen)


@lru_cache(maxsize=None)
def get_registry(path: Path = _CONFIG_FILE) -> AgentRegistry:
    """Get the registry for path (cached)."""
    return AgentRegistry.from_yaml(path)
