"""
Shared fixtures for flowtree tests.

Provides a small agent registry, a scripted FakeRunner standing in for real
agent processes, and sample flowchart exports.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import pytest

# Add repo root to path for imports
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from flowtree.config.agent_registry import AgentDefinition, AgentRegistry
from flowtree.runtime.runner import CommandRunner, InvocationResult


# ============================================================================
# Agent process fakes
# ============================================================================


class FakeRunner(CommandRunner):
    """Returns scripted stdout values in order; Exception entries are raised."""

    def __init__(self, outputs: Sequence[Union[str, Exception]] = ()):
        self.outputs: List[Union[str, Exception]] = list(outputs)
        self.calls: List[Tuple[str, Optional[str], Optional[float]]] = []

    @property
    def commands(self) -> List[str]:
        return [call[0] for call in self.calls]

    def invoke(self, command, work_dir=None, timeout=None) -> InvocationResult:
        self.calls.append((command, str(work_dir) if work_dir else None, timeout))
        if not self.outputs:
            raise AssertionError(f"unexpected invocation #{len(self.calls)}: {command[:80]}")
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        now = datetime.now(timezone.utc)
        return InvocationResult(
            command=command,
            work_dir=str(work_dir or ""),
            stdout=output,
            stderr="",
            exit_code=0,
            started_at=now,
            ended_at=now,
        )


PROCESS_OK = '{"completed": true, "secs_taken": 1, "tokens_used": 10, "comments": ["done"]}'
VERDICT_PASS = '{"fully_completed": true, "partially_completed": true, "should_retry": false, "warnings": []}'
VERDICT_FAIL = '{"fully_completed": false, "partially_completed": true, "should_retry": true, "warnings": ["missing file"]}'


def decision(answer: str, *choices: str) -> str:
    quoted = ", ".join(f'"{c}"' for c in (choices or (answer,)))
    return f'{{"choices": [{quoted}], "answer": "{answer}", "reasons": ["because"]}}'


@pytest.fixture
def registry() -> AgentRegistry:
    """Two fake agents: WORKER runs, CHECKER validates."""
    return AgentRegistry(
        [
            AgentDefinition(
                codename="WORKER",
                name="Worker CLI",
                command="worker",
                template='worker -p "<prompt>"',
                env_keys=("WORKER_API_KEY",),
            ),
            AgentDefinition(
                codename="CHECKER",
                name="Checker CLI",
                command="checker",
                template='checker --prompt "<prompt>"',
            ),
        ]
    )


@pytest.fixture
def make_runner():
    """Factory for FakeRunner instances."""
    return FakeRunner


# ============================================================================
# Sample exports
# ============================================================================

CSV_HEADER = (
    "Id,Name,Shape Library,Page ID,Contained By,Group,Line Source,"
    "Line Destination,Source Arrow,Destination Arrow,Tags,Status,"
    "Text Area 1,Comments"
)


@pytest.fixture
def decision_csv() -> str:
    """Decision root with two labelled branches, one carrying NoValidation."""
    return "\n".join(
        [
            CSV_HEADER + ",retries",
            "1,Document,,,,,,,,,,Draft,Release checklist,,",
            "2,Page,,,,,,,,,,,Page 1,,",
            '3,Decision,Flowchart Shapes,2,,,,,,,,,"Does the repo have tests?",,',
            "4,Process,Flowchart Shapes,2,,,,,,,,,Run the test suite,,2",
            '5,Process,Flowchart Shapes,2,,,,,,,"NoValidation,WORKER",,Write a first test,,',
            "6,Line,,2,,,3,4,None,Arrow,yes,,,,",
            "7,Line,,2,,,3,5,None,Arrow,,,no,,",
        ]
    )


@pytest.fixture
def single_leaf_csv() -> str:
    """Document row plus one process shape."""
    return "\n".join(
        [
            CSV_HEADER,
            "1,Document,,,,,,,,,,Draft,Hello chart,",
            "3,Process,Flowchart Shapes,2,,,,,,,,,Create hello.txt,",
        ]
    )
