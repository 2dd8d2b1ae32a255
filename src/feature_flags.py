"""
Feature flags for the action orchestration engine.

Lets operators switch safety layers and optional behaviour on and off
without a deploy. Resolution order, last wins:

    DEFAULTS -> settings.yaml `feature_flags` -> FF_<FLAG> env -> runtime override

Usage:
    from src.feature_flags import flags

    if flags.hallucination_guard:
        text = guard.apply(text, scheduled=False)
"""

import os
from typing import Dict, Optional, Set

from src.settings import settings


TRUTHY = {"true", "1", "yes", "on"}


def _env_bool(name: str) -> Optional[bool]:
    raw = os.environ.get(f"FF_{name.upper()}")
    if raw is None:
        return None
    return raw.strip().lower() in TRUTHY


def _flag(name: str) -> property:
    return property(lambda self: self.is_enabled(name), doc=f"Flag '{name}'")


class FeatureFlags:
    """Flag registry with runtime overrides for tests and admin endpoints."""

    DEFAULTS: Dict[str, bool] = {
        # Safety layers
        "hallucination_guard": True,        # Replace fabricated scheduling confirmations
        "response_cleanup": True,           # Strip leaked @commands and system confirmations
        "action_cap": True,                 # One structural action per turn
        "expected_field_inference": True,   # Match set-field against the last agent question

        # Prompt enrichment
        "placeholder_instructions": True,   # Explain {placeholder} actions to the model
        "followup_context_hint": True,      # Hint when history talks about calling back

        # Runtime behaviour
        "business_hours": True,             # Out-of-hours reply instead of a model call
        "agent_handoff_reentry": True,      # Secondary agent answers immediately on transfer
        "external_calendar": True,          # Use the account's calendar provider when configured
        "token_usage_tracking": True,       # Persist token usage with estimated cost
    }

    def __init__(self):
        self._resolved: Dict[str, bool] = {}
        self._overrides: Dict[str, bool] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read settings and environment; drops runtime overrides"""
        configured = settings.get_nested("feature_flags", {}) or {}
        resolved = dict(self.DEFAULTS)
        resolved.update({k: v for k, v in configured.items() if isinstance(v, bool)})
        for name in resolved:
            env_value = _env_bool(name)
            if env_value is not None:
                resolved[name] = env_value
        self._resolved = resolved
        self._overrides = {}

    def is_enabled(self, flag: str) -> bool:
        """Unknown flags are off."""
        return self._overrides.get(flag, self._resolved.get(flag, False))

    def set_override(self, flag: str, value: bool) -> None:
        self._overrides[flag] = value

    def clear_override(self, flag: str) -> None:
        self._overrides.pop(flag, None)

    def clear_all_overrides(self) -> None:
        self._overrides.clear()

    def get_all_flags(self) -> Dict[str, bool]:
        return {**self._resolved, **self._overrides}

    def get_enabled_flags(self) -> Set[str]:
        return {name for name, on in self.get_all_flags().items() if on}

    hallucination_guard = _flag("hallucination_guard")
    response_cleanup = _flag("response_cleanup")
    action_cap = _flag("action_cap")
    expected_field_inference = _flag("expected_field_inference")
    placeholder_instructions = _flag("placeholder_instructions")
    followup_context_hint = _flag("followup_context_hint")
    business_hours = _flag("business_hours")
    agent_handoff_reentry = _flag("agent_handoff_reentry")
    external_calendar = _flag("external_calendar")
    token_usage_tracking = _flag("token_usage_tracking")


# Singleton
flags = FeatureFlags()
