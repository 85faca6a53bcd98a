from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .cancellation import CancelToken
from .db import TurnRepository
from .prompts import WELCOME_MESSAGE
from .reconciler import DEFAULT_WINDOW_SECONDS, ProgressReconciler
from .runtime_config import RuntimeConfig, RuntimeConfigStore
from .types import Turn, TurnRole
from .utils import make_id, utc_now_iso

logger = logging.getLogger(__name__)

SessionListener = Callable[[str, dict[str, Any]], None]


class Session:
    """Conversation state for one open document.

    Every transition is published to subscribers as ``(event_type, payload)``.
    At most one status turn exists at a time and it is never persisted.
    """

    def __init__(
        self,
        document_id: str,
        *,
        model: str,
        turns: list[Turn] | None = None,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self.document_id = document_id
        self.model = model
        self.cancel_token: CancelToken | None = None
        self.reconciler = ProgressReconciler(window_seconds=window_seconds)
        self.closed = False
        self._turns: list[Turn] = list(turns or [])
        self._listeners: list[SessionListener] = []

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def busy(self) -> bool:
        return self.cancel_token is not None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event_type: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, payload)
            except Exception:
                logger.exception("Session listener failed document_id=%s event=%s", self.document_id, event_type)

    def _index_of(self, turn_id: str) -> int | None:
        for index, turn in enumerate(self._turns):
            if turn.id == turn_id:
                return index
        return None

    def get_turn(self, turn_id: str) -> Turn | None:
        index = self._index_of(turn_id)
        return None if index is None else self._turns[index]

    def add_turn(self, role: TurnRole, content: str, *, turn_id: str | None = None, **kwargs: Any) -> Turn:
        turn = Turn(id=turn_id or make_id("msg"), role=role, content=content, created_at=utc_now_iso(), **kwargs)
        self._turns.append(turn)
        self._notify("turn_added", turn.to_dict())
        return turn

    def remove_turn(self, turn_id: str) -> bool:
        index = self._index_of(turn_id)
        if index is None:
            return False
        turn = self._turns.pop(index)
        self._notify("turn_removed", {"id": turn.id})
        return True

    def set_status(self, text: str) -> Turn:
        status = Turn(id=make_id("msg"), role="assistant", content=text, is_status=True, created_at=utc_now_iso())
        for index, turn in enumerate(self._turns):
            if turn.is_status:
                self._turns[index] = status
                self._notify("status", {"replaced": turn.id, "turn": status.to_dict()})
                return status
        self._turns.append(status)
        self._notify("status", {"replaced": None, "turn": status.to_dict()})
        return status

    def show_streaming(self, turn_id: str, text: str) -> Turn:
        """Show live assistant text, taking the place of the status turn on first call."""
        existing = self.get_turn(turn_id)
        if existing is not None:
            existing.content = text
            self._notify("turn_updated", existing.to_dict())
            return existing

        for turn in [t for t in self._turns if t.is_status]:
            self.remove_turn(turn.id)
        streaming = Turn(id=turn_id, role="assistant", content=text, is_streaming=True, created_at=utc_now_iso())
        self._turns.append(streaming)
        self._notify("turn_added", streaming.to_dict())
        return streaming

    def clear_transient(self) -> None:
        for turn in [t for t in self._turns if t.is_transient]:
            self.remove_turn(turn.id)

    def persistable_turns(self) -> list[Turn]:
        return [turn for turn in self._turns if not turn.is_transient]

    def history(self, limit: int) -> list[Turn]:
        if limit <= 0:
            return []
        return self.persistable_turns()[-limit:]

    def clear(self) -> None:
        self._turns.clear()
        self._notify("cleared", {"document_id": self.document_id})

    def close(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.cancel("session_closed")
        self.reconciler.close()
        self.closed = True
        self._notify("session_closed", {"document_id": self.document_id})
        self._listeners.clear()


class SessionManager:
    """Holds the single active session; opening another document discards it."""

    def __init__(
        self,
        *,
        repository: TurnRepository | None = None,
        runtime_config_store: RuntimeConfigStore | None = None,
        persisted_turn_limit: int = 50,
    ) -> None:
        self.repository = repository
        self.runtime_config_store = runtime_config_store
        self.persisted_turn_limit = persisted_turn_limit
        self._active: Session | None = None

    def _runtime_config(self) -> RuntimeConfig:
        if self.runtime_config_store is not None:
            return self.runtime_config_store.get()
        return RuntimeConfig()

    @property
    def active(self) -> Session | None:
        return self._active

    def get(self, document_id: str) -> Session | None:
        if self._active is not None and self._active.document_id == document_id:
            return self._active
        return None

    def open(self, document_id: str) -> Session:
        current = self.get(document_id)
        if current is not None:
            return current
        if self._active is not None:
            logger.info(
                "Discarding session document_id=%s for document_id=%s",
                self._active.document_id,
                document_id,
            )
            self._active.close()

        runtime = self._runtime_config()
        turns = self.repository.list_turns(document_id) if self.repository is not None else []
        session = Session(
            document_id,
            model=runtime.selected_model,
            turns=turns,
            window_seconds=runtime.throttle_window_seconds,
        )
        if not turns:
            session.add_turn("assistant", WELCOME_MESSAGE)
        self._active = session
        logger.info("Session opened document_id=%s restored_turns=%s", document_id, len(turns))
        return session

    def save(self, session: Session) -> None:
        if self.repository is None:
            return
        self.repository.replace_turns(
            session.document_id,
            session.persistable_turns(),
            limit=self.persisted_turn_limit,
        )

    def clear_history(self, session: Session) -> None:
        session.clear()
        if self.repository is not None:
            self.repository.delete_turns(session.document_id)

    def close(self) -> None:
        if self._active is not None:
            self._active.close()
            self._active = None
