from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal shared by one turn.

    The stream reader checks it after every read and the executor checks it
    before each ordered command. Setting it never rolls anything back.
    """

    def __init__(self, label: str | None = None) -> None:
        self.label = label
        self.reason: str | None = None
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user_request") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested label=%s reason=%s", self.label, reason)
