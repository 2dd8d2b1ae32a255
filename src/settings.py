"""
Settings loader for the action orchestration engine (settings.yaml).

Usage:
    from src.settings import settings

    model = settings.llm.model
    threshold = settings.action_filter.field_score_threshold
"""

import os
import yaml
from pathlib import Path
from typing import List, Any


# Path to the settings file
SETTINGS_FILE = Path(__file__).parent / "settings.yaml"

# Defaults (used when a key is missing from YAML)
DEFAULTS = {
    "llm": {
        "base_url": "https://api.openai.com/v1",
        "api_key": "",
        "model": "gpt-4o-mini",
        "timeout": 60,
        "max_tokens": 1000,
        "temperature": 0.7,
        # Models matching any marker take max_completion_tokens and no temperature
        "new_style_model_markers": ["gpt-5", "gpt-4.1", "o3", "o4"],
        # USD per 1K tokens
        "pricing": {
            "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
            "gpt-4o": {"input": 0.005, "output": 0.015},
            "gpt-5": {"input": 0.01, "output": 0.03},
            "gpt-5-mini": {"input": 0.003, "output": 0.012},
            "gpt-5-nano": {"input": 0.001, "output": 0.004},
        },
        "default_pricing": {"input": 0.001, "output": 0.002},
    },
    "orchestration": {
        "max_rounds": 4,
        "min_text_length": 15,
        "filler_pattern": r"^(Entendido!?|Certo!?|Ok!?|Processando|Aguarde)[\s.!]*$",
        "greetings": [
            "oi", "olá", "ola", "bom dia", "boa tarde", "boa noite",
            "hey", "hello", "hi",
        ],
        "handoff_fallback_message": "Olá",
        "cleanup_fallback_message": "Perfeito! Posso ajudar com mais alguma coisa?",
    },
    "action_filter": {
        "capture_limit": 5,
        "structural_limit": 1,
        "executable_threshold": 3,
        "field_score_threshold": 30,
        "exact_phrase_score": 100,
        "word_score": 30,
        "whole_word_bonus": 20,
        "min_word_length": 3,
        "stopwords": [
            "do", "da", "de", "seu", "sua", "qual", "como", "que", "por",
            "para", "com", "em", "um", "uma", "nos", "voce", "você", "meu",
            "minha", "o", "a", "os", "as", "é", "e", "plano", "saude", "saúde",
        ],
        "structural_priority": [
            "create-deal", "goto-stage", "stage-move", "follow-up",
            "scheduling", "transfer", "end-conversation", "tag",
        ],
    },
    "prompt": {
        "history_limit": 20,
        "timezone_offset_hours": -3,
        "next_stage_preview_chars": 300,
    },
    "scheduling": {
        "max_days_ahead": 30,
        "min_lead_hours": 1,
        "slot_minutes": 60,
        "per_slot_limit": 1,
        "max_generated_slots": 15,
        "max_returned_slots": 10,
        "slots_in_message": 5,
        "external_days": 7,
        "external_start_hour": 8,
        "external_end_hour": 18,
        "executor_timeout": 15,
    },
    "followup": {
        "default_time": "09:00",
        "default_reason": "Retorno agendado pelo agente",
        "context_messages": 5,
        "context_max_chars": 500,
    },
    "debounce": {
        "wait_seconds": 5,
    },
    "storage": {
        "db_path": "data/crm.db",
    },
    "calendar": {
        "base_url": "https://www.googleapis.com/calendar/v3",
        "timeout": 10,
    },
    "logging": {
        "level": "INFO",
    },
    "feature_flags": {},
}


class DotDict(dict):
    """Dict with attribute access: d.key instead of d['key']"""

    def __getattr__(self, key: str) -> Any:
        try:
            value = self[key]
            if isinstance(value, dict):
                return DotDict(value)
            return value
        except KeyError:
            raise AttributeError(f"Setting '{key}' not found")

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def get_nested(self, path: str, default: Any = None) -> Any:
        """Get a value by dotted path: 'llm.model'"""
        keys = path.split('.')
        value = self
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge of two dicts (override wins)"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env(config: dict) -> dict:
    """Environment variables override the file for secrets and paths."""
    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key:
        config["llm"]["api_key"] = api_key
    db_path = os.environ.get("DB_PATH")
    if db_path:
        config["storage"]["db_path"] = db_path
    return config


def load_settings(filepath: Path = None) -> DotDict:
    """
    Load settings from a YAML file.

    Priority:
    1. Environment (OPENAI_API_KEY, DB_PATH)
    2. YAML file
    3. DEFAULTS

    Args:
        filepath: Settings file (defaults to settings.yaml next to this module)

    Returns:
        DotDict with the settings
    """
    filepath = filepath or SETTINGS_FILE

    config = _deep_merge({}, DEFAULTS)

    if filepath.exists():
        with open(filepath, "r", encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}
        config = _deep_merge(config, yaml_config)
    else:
        print(f"[settings] Settings file not found: {filepath}")
        print("[settings] Using defaults")

    return DotDict(_apply_env(config))


def validate_settings(settings: DotDict) -> List[str]:
    """
    Validate settings.

    Returns:
        List of errors (empty when everything is fine)
    """
    errors = []

    if not settings.llm.model:
        errors.append("llm.model is not set")
    if not settings.llm.base_url:
        errors.append("llm.base_url is not set")
    if settings.llm.timeout <= 0:
        errors.append("llm.timeout must be > 0")

    if settings.orchestration.max_rounds < 2:
        errors.append("orchestration.max_rounds must be >= 2")

    af = settings.action_filter
    if af.capture_limit < 0:
        errors.append("action_filter.capture_limit must be >= 0")
    if af.structural_limit < 1:
        errors.append("action_filter.structural_limit must be >= 1")
    if af.field_score_threshold <= 0:
        errors.append("action_filter.field_score_threshold must be > 0")

    sched = settings.scheduling
    if sched.slot_minutes <= 0:
        errors.append("scheduling.slot_minutes must be > 0")
    if sched.external_start_hour >= sched.external_end_hour:
        errors.append("scheduling.external_start_hour must be < external_end_hour")
    if sched.max_returned_slots > sched.max_generated_slots:
        errors.append("scheduling.max_returned_slots must be <= max_generated_slots")

    if settings.debounce.wait_seconds < 0:
        errors.append("debounce.wait_seconds must be >= 0")

    return errors


# Global settings instance (lazy)
_settings = None


def get_settings() -> DotDict:
    """Global settings (singleton)"""
    global _settings
    if _settings is None:
        _settings = load_settings()
        errors = validate_settings(_settings)
        if errors:
            print("[settings] Invalid settings:")
            for err in errors:
                print(f"  - {err}")
    return _settings


def reload_settings() -> DotDict:
    """Reload settings from file"""
    global _settings
    _settings = None
    return get_settings()


# For convenient import: from src.settings import settings
settings = get_settings()


# =============================================================================
# CLI for inspecting settings
# =============================================================================

if __name__ == "__main__":
    import json

    print("=" * 60)
    print("CURRENT SETTINGS")
    print("=" * 60)

    s = load_settings()

    errors = validate_settings(s)
    if errors:
        print("\n[!] ERRORS:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("\n[+] All settings valid")

    print("\n" + "-" * 60)
    print(json.dumps(dict(s), indent=2, ensure_ascii=False))
