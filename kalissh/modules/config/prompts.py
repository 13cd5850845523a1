from __future__ import annotations

import logging
import os
import re
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, conint, field_validator

logger = logging.getLogger(__name__)


class VariableSpec(BaseModel):
    name: str
    required: bool = False
    default: Optional[str] = None


class PromptSpec(BaseModel):
    version: conint(ge=1)
    name: str
    role: str
    content: str
    variables: List[VariableSpec] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("role")
    @classmethod
    def role_must_be_system(cls, v: str) -> str:
        if v != "system":
            raise ValueError("role must be 'system'")
        return v


DEFAULT_PROMPTS: Dict[str, str] = {
    "chat": (
        "You are a multi-model AI assistant with access to cybersecurity tools via SSH. "
        "You can analyze security queries and suggest appropriate commands for the "
        "{{target_os}} machine."
    ),
    "command": (
        "You are a penetration testing assistant operating a {{target_os}} machine. "
        "Translate the operator's intent into exactly one shell command. "
        "Reply with the bare command text only: no explanation, no markdown, no comments."
    ),
    "analysis": (
        "You are a cybersecurity expert analyzing SSH command execution results from a "
        "{{target_os}} machine. Provide detailed analysis and security insights."
    ),
}

DEFAULT_VARIABLES: Dict[str, str] = {"target_os": "Kali Linux"}

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


def _render(content: str, values: Dict[str, str]) -> str:
    """Render {{var}} placeholders using a simple replacement."""
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1).strip(), m.group(0)), content)


def _load_spec(path: str) -> PromptSpec:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return PromptSpec(**data)


def _resolve_values(spec: PromptSpec, overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
    overrides = overrides or {}
    resolved: Dict[str, str] = {}
    for v in spec.variables:
        if v.name in overrides:
            resolved[v.name] = overrides[v.name]
        elif v.default is not None:
            resolved[v.name] = v.default
        elif v.required:
            raise ValueError(f"Missing required prompt variable: {v.name}")
    # allow additional overrides not declared in variables
    for k, v in overrides.items():
        resolved.setdefault(k, v)
    return resolved


def _candidate_paths(role: str, filename: str) -> List[Optional[str]]:
    """Return candidate file paths to search for the prompt file."""
    return [
        os.getenv(f"KALISSH_{role.upper()}_PROMPT_FILE"),
        os.getenv("KALISSH_PROMPT_FILE"),
        os.path.join(os.getcwd(), "prompts", filename),
        f"/etc/kalissh/prompts/{filename}",
    ]


def get_prompt(
    role: str = "chat",
    default_filename: Optional[str] = None,
    variables: Optional[Dict[str, str]] = None,
) -> str:
    """Load and render the system prompt for a role.

    Lookup order:
    - KALISSH_<ROLE>_PROMPT_FILE
    - KALISSH_PROMPT_FILE
    - prompts/<default_filename>
    - /etc/kalissh/prompts/<default_filename>
    Fallback to the built-in prompt for the role.
    """
    filename = default_filename or f"{role}.prompt.yaml"
    for path in filter(None, _candidate_paths(role, filename)):
        try:
            if not os.path.isfile(path):
                continue
            spec = _load_spec(path)
            values = _resolve_values(spec, variables)
            return _render(spec.content, values)
        except Exception as e:  # noqa: BLE001 - try the next candidate
            logger.warning(f"Ignoring prompt file {path}: {e}")
            continue

    if role not in DEFAULT_PROMPTS:
        raise ValueError(f"Unknown prompt role: {role}")
    return _render(DEFAULT_PROMPTS[role], {**DEFAULT_VARIABLES, **(variables or {})})
