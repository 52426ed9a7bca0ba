# packages/providers/capabilities.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from packages.core.settings import get_settings


class ModelProfile(str, Enum):
    """How a model delivers reasoning; resolved once per request."""

    STANDARD = "standard"
    REASONING_FIELD = "reasoning_field"  # delta.reasoning / delta.reasoning_content
    THINK_TAGS = "think_tags"  # <think>...</think> inline in content

    @property
    def splits_think_tags(self) -> bool:
        return self is ModelProfile.THINK_TAGS

    def request_extras(self) -> Dict[str, Any]:
        if self is ModelProfile.REASONING_FIELD:
            return {"include_reasoning": True}
        return {}


# (pattern, profile); a trailing '*' matches by prefix, first match wins
_BUILTIN_RULES: Tuple[Tuple[str, ModelProfile], ...] = (
    ("*:thinking", ModelProfile.REASONING_FIELD),
    ("qwen/qwen3*", ModelProfile.THINK_TAGS),
    ("qwen3*", ModelProfile.THINK_TAGS),
    ("deepseek/deepseek-r1*", ModelProfile.THINK_TAGS),
    ("deepseek-r1*", ModelProfile.THINK_TAGS),
    ("deepseek-reasoner", ModelProfile.REASONING_FIELD),
)


def strip_provider_prefix(model_id: str) -> str:
    return model_id.split(":", 1)[1] if model_id.startswith("lm:") else model_id


def _matches(pattern: str, model_id: str) -> bool:
    if pattern.startswith("*"):
        return model_id.endswith(pattern[1:])
    if pattern.endswith("*"):
        return model_id.startswith(pattern[:-1])
    return model_id == pattern


def resolve_profile(model_id: str, overrides: Optional[Mapping[str, str]] = None) -> ModelProfile:
    mid = strip_provider_prefix(model_id).lower()
    rules = overrides if overrides is not None else get_settings().model_profiles
    for pattern, name in rules.items():
        if _matches(pattern.lower(), mid):
            return ModelProfile(name)
    for pattern, profile in _BUILTIN_RULES:
        if _matches(pattern, mid):
            return profile
    return ModelProfile.STANDARD
