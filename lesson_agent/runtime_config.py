from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .config import DEFAULT_MODEL, DEFAULT_OLLAMA_BASE_URL, Settings

logger = logging.getLogger(__name__)

BASE_URL_SCHEMES = {"http", "https"}


def _valid_base_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in BASE_URL_SCHEMES and bool(parsed.netloc)


@dataclass(slots=True)
class RuntimeConfig:
    selected_model: str = DEFAULT_MODEL
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    ollama_timeout_seconds: int = 30
    agent_mode: bool = True
    throttle_window_ms: int = 300
    parallel_commands_enabled: bool = True
    parallel_commands_max_workers: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> RuntimeConfig:
        base_url = settings.ollama_base_url.rstrip("/")
        if not _valid_base_url(base_url):
            logger.warning("Ignoring invalid ollama base url=%r; using default", settings.ollama_base_url)
            base_url = DEFAULT_OLLAMA_BASE_URL
        return cls(
            selected_model=settings.default_model or DEFAULT_MODEL,
            ollama_base_url=base_url,
            ollama_timeout_seconds=max(1, settings.ollama_timeout_seconds),
            agent_mode=bool(settings.agent_mode),
            throttle_window_ms=max(0, min(settings.throttle_window_ms, 5000)),
            parallel_commands_enabled=bool(settings.parallel_commands_enabled),
            parallel_commands_max_workers=max(1, min(settings.parallel_commands_max_workers, 8)),
        )

    @property
    def throttle_window_seconds(self) -> float:
        return self.throttle_window_ms / 1000.0


def _default_runtime_config_path() -> Path:
    return Path.home() / ".lesson-agent" / "runtime-config.json"


class RuntimeConfigStore:
    def __init__(self, settings: Settings):
        self._lock = threading.RLock()
        self._path = Path(settings.runtime_config_path).expanduser() if settings.runtime_config_path else _default_runtime_config_path()
        self._config = RuntimeConfig.from_settings(settings)
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> RuntimeConfig:
        with self._lock:
            return RuntimeConfig(**asdict(self._config))

    def public_view(self) -> dict[str, Any]:
        cfg = self.get()
        return {
            **asdict(cfg),
            "config_path": str(self._path),
        }

    def update(
        self,
        *,
        selected_model: str | None = None,
        ollama_base_url: str | None = None,
        ollama_timeout_seconds: int | None = None,
        agent_mode: bool | None = None,
        throttle_window_ms: int | None = None,
        parallel_commands_enabled: bool | None = None,
        parallel_commands_max_workers: int | None = None,
    ) -> RuntimeConfig:
        with self._lock:
            next_cfg = RuntimeConfig(**asdict(self._config))

            if selected_model is not None:
                cleaned = selected_model.strip()
                if not cleaned:
                    raise ValueError("selected_model cannot be empty")
                next_cfg.selected_model = cleaned

            if ollama_base_url is not None:
                cleaned = ollama_base_url.strip().rstrip("/")
                if not _valid_base_url(cleaned):
                    raise ValueError("ollama_base_url must be an http or https URL")
                next_cfg.ollama_base_url = cleaned

            if ollama_timeout_seconds is not None:
                if ollama_timeout_seconds < 5 or ollama_timeout_seconds > 600:
                    raise ValueError("ollama_timeout_seconds must be between 5 and 600")
                next_cfg.ollama_timeout_seconds = ollama_timeout_seconds

            if agent_mode is not None:
                next_cfg.agent_mode = bool(agent_mode)

            if throttle_window_ms is not None:
                if throttle_window_ms < 0 or throttle_window_ms > 5000:
                    raise ValueError("throttle_window_ms must be between 0 and 5000")
                next_cfg.throttle_window_ms = throttle_window_ms

            if parallel_commands_enabled is not None:
                next_cfg.parallel_commands_enabled = bool(parallel_commands_enabled)

            if parallel_commands_max_workers is not None:
                if parallel_commands_max_workers < 1 or parallel_commands_max_workers > 8:
                    raise ValueError("parallel_commands_max_workers must be between 1 and 8")
                next_cfg.parallel_commands_max_workers = parallel_commands_max_workers

            self._config = next_cfg
            self._persist_locked()
            return RuntimeConfig(**asdict(self._config))

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                return
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed loading runtime config from %s", self._path)
            return

        try:
            self.update(
                selected_model=parsed.get("selected_model"),
                ollama_base_url=parsed.get("ollama_base_url"),
                ollama_timeout_seconds=parsed.get("ollama_timeout_seconds"),
                agent_mode=parsed.get("agent_mode"),
                throttle_window_ms=parsed.get("throttle_window_ms"),
                parallel_commands_enabled=parsed.get("parallel_commands_enabled"),
                parallel_commands_max_workers=parsed.get("parallel_commands_max_workers"),
            )
        except (ValueError, TypeError, AttributeError):
            logger.exception("Runtime config file is invalid; keeping defaults")

    def _persist_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(asdict(self._config), indent=2, ensure_ascii=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(payload + "\n", encoding="utf-8")
        os.replace(temp_path, self._path)
        try:
            os.chmod(self._path, 0o600)
        except OSError:
            pass
