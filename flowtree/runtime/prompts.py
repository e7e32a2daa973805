"""
prompts.py - Prompt composition for agent invocations.

Pure functions, no I/O beyond reading the packaged instruction texts in
prompt_texts/. Prompts are plain string concatenation:

    run      = task text + response-shape instruction
    validate = validation text + original task + output to validate
               + verdict-shape instruction
    retry    = task text + one feedback section per prior critique
               + response-shape instruction

build_command() substitutes a composed prompt into an agent's command
template at the <prompt> placeholder, escaped for a double-quoted shell
argument.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from .responses import ResponseKind

if TYPE_CHECKING:
    from .node_config import ExecutableNode

_TEXTS_DIR = Path(__file__).parent / "prompt_texts"

PROMPT_PLACEHOLDER = "<prompt>"

SECTION_RULE = "---"
ORIGINAL_TASK_HEADER = "Original task:"
OUTPUT_HEADER = "Output to validate:"
FEEDBACK_HEADER = "Previous validation feedback:"


@lru_cache(maxsize=None)
def _load_text(name: str) -> str:
    return (_TEXTS_DIR / f"{name}.md").read_text(encoding="utf-8").strip()


def default_validate_prompt() -> str:
    """Validation instruction used when settings do not provide one."""
    return _load_text("validate")


def instruction_for_kind(kind: ResponseKind) -> str:
    """The fixed JSON-shape instruction for a response kind."""
    return _load_text(ResponseKind(kind).value)


def build_run_prompt(node: "ExecutableNode") -> str:
    """Task text plus the process/decision response instruction."""
    base = node.prompt.strip()
    instruction = instruction_for_kind(node.kind)
    if not base:
        return instruction
    return f"{base}\n\n{instruction}"


def build_validate_prompt(node: "ExecutableNode", prior_output: str) -> str:
    """Full validation prompt, or "" when the node does not validate."""
    validate_text = node.config.validate_prompt.strip()
    if not validate_text:
        return ""
    parts = [
        validate_text,
        "",
        SECTION_RULE,
        ORIGINAL_TASK_HEADER,
        node.prompt.strip(),
        "",
        OUTPUT_HEADER,
        prior_output,
        "",
        SECTION_RULE,
        instruction_for_kind(ResponseKind.VALIDATION),
    ]
    return "\n".join(parts)


def build_retry_prompt(node: "ExecutableNode", critiques: Iterable[str]) -> str:
    """Task text, prior critiques (blank ones skipped) and the shape instruction."""
    prompt = node.prompt.strip()
    for critique in critiques:
        critique = critique.strip()
        if not critique:
            continue
        prompt += f"\n\n{SECTION_RULE}\n{FEEDBACK_HEADER}\n{critique}"
    return f"{prompt}\n\n{instruction_for_kind(node.kind)}"


def escape_for_shell_prompt(prompt: str) -> str:
    """Escape backslashes and double quotes for a double-quoted shell argument."""
    return prompt.replace("\\", "\\\\").replace('"', '\\"')


def build_command(template: str, prompt: str) -> str:
    """Substitute the escaped prompt at the first <prompt> placeholder."""
    return template.replace(PROMPT_PLACEHOLDER, escape_for_shell_prompt(prompt), 1)
