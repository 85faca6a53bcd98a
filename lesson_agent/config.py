from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_MODEL = "gpt-oss:20b"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8766
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    ollama_timeout_seconds: int = 30
    default_model: str = DEFAULT_MODEL
    agent_mode: bool = True
    throttle_window_ms: int = 300
    history_context_turns: int = 8
    persisted_turn_limit: int = 50
    max_prompt_chars: int = 10000
    parallel_commands_enabled: bool = True
    parallel_commands_max_workers: int = 4
    db_path: str | None = None
    runtime_config_path: str | None = None
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        host=os.getenv("LESSON_AGENT_HOST", "127.0.0.1"),
        port=int(os.getenv("LESSON_AGENT_PORT", "8766")),
        ollama_base_url=os.getenv("LESSON_AGENT_OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL).strip(),
        ollama_timeout_seconds=int(os.getenv("LESSON_AGENT_OLLAMA_TIMEOUT_SECONDS", "30")),
        default_model=os.getenv("LESSON_AGENT_DEFAULT_MODEL", DEFAULT_MODEL).strip(),
        agent_mode=os.getenv("LESSON_AGENT_AGENT_MODE", "true").strip().lower() != "false",
        throttle_window_ms=int(os.getenv("LESSON_AGENT_THROTTLE_WINDOW_MS", "300")),
        history_context_turns=int(os.getenv("LESSON_AGENT_HISTORY_CONTEXT_TURNS", "8")),
        persisted_turn_limit=int(os.getenv("LESSON_AGENT_PERSISTED_TURN_LIMIT", "50")),
        max_prompt_chars=int(os.getenv("LESSON_AGENT_MAX_PROMPT_CHARS", "10000")),
        parallel_commands_enabled=os.getenv("LESSON_AGENT_PARALLEL_COMMANDS_ENABLED", "true").strip().lower() != "false",
        parallel_commands_max_workers=int(os.getenv("LESSON_AGENT_PARALLEL_COMMANDS_MAX_WORKERS", "4")),
        db_path=(os.getenv("LESSON_AGENT_DB_PATH") or "").strip() or None,
        runtime_config_path=(os.getenv("LESSON_AGENT_RUNTIME_CONFIG_PATH") or "").strip() or None,
        log_level=os.getenv("LESSON_AGENT_LOG_LEVEL", "INFO").strip().upper(),
    )
