from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from lesson_agent.config import Settings
from lesson_agent.db import TurnRepository, connect
from lesson_agent.prompts import WELCOME_MESSAGE
from lesson_agent.runtime_config import RuntimeConfigStore
from lesson_agent.session import Session, SessionManager
from lesson_agent.types import CommandResult, Turn


class TurnRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repository = TurnRepository(connect(":memory:"))

    def tearDown(self) -> None:
        self.repository.close()

    def test_transient_turns_are_not_stored(self) -> None:
        turns = [
            Turn(id="t1", role="user", content="hi"),
            Turn(id="t2", role="assistant", content="Thinking...", is_status=True),
            Turn(id="t3", role="assistant", content="partial", is_streaming=True),
            Turn(id="t4", role="assistant", content="hello"),
        ]
        stored = self.repository.replace_turns("doc_1", turns)

        self.assertEqual(stored, 2)
        self.assertEqual([t.id for t in self.repository.list_turns("doc_1")], ["t1", "t4"])

    def test_limit_keeps_most_recent_turns_in_order(self) -> None:
        turns = [Turn(id=f"t{n}", role="user", content=f"message {n}") for n in range(60)]
        self.repository.replace_turns("doc_1", turns, limit=50)

        restored = self.repository.list_turns("doc_1")
        self.assertEqual(len(restored), 50)
        self.assertEqual(restored[0].content, "message 10")
        self.assertEqual(restored[-1].content, "message 59")
        self.assertEqual(self.repository.count_turns("doc_1"), 50)

    def test_command_results_and_attachments_survive(self) -> None:
        results = [
            CommandResult(name="set_title", success=True, detail="ok", index=0, execution_mode="parallel"),
            CommandResult(name="delete_block", success=False, detail="Invalid index: 9", index=1),
        ]
        self.repository.replace_turns(
            "doc_1",
            [
                Turn(id="t1", role="user", content="go", attachments=["notes.txt"]),
                Turn(id="t2", role="assistant", content="Done", command_results=results),
                Turn(id="t3", role="assistant", content="plain"),
            ],
        )

        restored = self.repository.list_turns("doc_1")
        self.assertEqual(restored[0].attachments, ["notes.txt"])
        self.assertEqual([r.name for r in restored[1].command_results], ["set_title", "delete_block"])
        self.assertEqual(restored[1].command_results[0].execution_mode, "parallel")
        self.assertFalse(restored[1].command_results[1].success)
        self.assertEqual(restored[1].command_results[1].turn_id, "t2")
        self.assertIsNone(restored[2].command_results)

    def test_documents_are_isolated_and_deletable(self) -> None:
        self.repository.replace_turns("doc_1", [Turn(id="a", role="user", content="one")])
        self.repository.replace_turns("doc_2", [Turn(id="b", role="user", content="two")])

        self.repository.delete_turns("doc_1")

        self.assertEqual(self.repository.list_turns("doc_1"), [])
        self.assertEqual([t.id for t in self.repository.list_turns("doc_2")], ["b"])


class SessionManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.repository = TurnRepository(connect(":memory:"))
        self.sessions = SessionManager(repository=self.repository, persisted_turn_limit=50)

    def tearDown(self) -> None:
        self.repository.close()

    def test_new_session_starts_with_welcome_turn(self) -> None:
        session = self.sessions.open("doc_1")

        self.assertEqual(len(session.turns), 1)
        self.assertEqual(session.turns[0].content, WELCOME_MESSAGE)
        self.assertIs(self.sessions.open("doc_1"), session)

    def test_opening_another_document_discards_the_active_session(self) -> None:
        first = self.sessions.open("doc_1")
        events: list[str] = []
        first.subscribe(lambda event_type, _payload: events.append(event_type))

        second = self.sessions.open("doc_2")

        self.assertTrue(first.closed)
        self.assertEqual(events, ["session_closed"])
        self.assertIs(self.sessions.active, second)
        self.assertIsNone(self.sessions.get("doc_1"))

    def test_reopening_restores_saved_turns(self) -> None:
        session = self.sessions.open("doc_1")
        session.add_turn("user", "make a quiz")
        session.set_status("Thinking...")
        self.sessions.save(session)

        self.sessions.open("doc_2")
        restored = self.sessions.open("doc_1")

        self.assertEqual([t.content for t in restored.turns], [WELCOME_MESSAGE, "make a quiz"])

    def test_clear_history_removes_stored_turns(self) -> None:
        session = self.sessions.open("doc_1")
        session.add_turn("user", "hello")
        self.sessions.save(session)

        self.sessions.clear_history(session)

        self.assertEqual(session.turns, [])
        self.assertEqual(self.repository.count_turns("doc_1"), 0)

    def test_closing_a_busy_session_cancels_its_turn(self) -> None:
        from lesson_agent.cancellation import CancelToken

        session = self.sessions.open("doc_1")
        token = CancelToken()
        session.cancel_token = token

        self.sessions.close()

        self.assertTrue(token.cancelled)
        self.assertIsNone(self.sessions.active)


class SessionTests(unittest.TestCase):
    def test_status_turn_is_replaced_not_stacked(self) -> None:
        session = Session("doc_1", model="m")
        session.add_turn("user", "hi")
        session.set_status("Thinking...")
        session.set_status("Working on your canvas...")

        statuses = [t for t in session.turns if t.is_status]
        self.assertEqual(len(statuses), 1)
        self.assertEqual(statuses[0].content, "Working on your canvas...")

    def test_streaming_turn_takes_the_place_of_the_status(self) -> None:
        session = Session("doc_1", model="m")
        session.set_status("Thinking...")

        session.show_streaming("reply", "Hel")
        session.show_streaming("reply", "Hello")

        self.assertEqual([(t.id, t.content) for t in session.turns], [("reply", "Hello")])
        session.clear_transient()
        self.assertEqual(session.turns, [])

    def test_listener_failure_does_not_break_notification(self) -> None:
        session = Session("doc_1", model="m")
        seen: list[str] = []

        def broken(_event_type: str, _payload: dict) -> None:
            raise RuntimeError("boom")

        session.subscribe(broken)
        unsubscribe = session.subscribe(lambda event_type, _payload: seen.append(event_type))
        with self.assertLogs("lesson_agent.session", level="ERROR"):
            session.add_turn("user", "hi")
        unsubscribe()
        with self.assertLogs("lesson_agent.session", level="ERROR"):
            session.add_turn("user", "again")

        self.assertEqual(seen, ["turn_added"])


class RuntimeConfigStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "runtime-config.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_defaults_come_from_settings(self) -> None:
        store = RuntimeConfigStore(Settings(runtime_config_path=str(self.path), default_model="llama3"))

        config = store.get()
        self.assertEqual(config.selected_model, "llama3")
        self.assertEqual(config.throttle_window_seconds, 0.3)
        self.assertEqual(store.public_view()["config_path"], str(self.path))

    def test_update_persists_and_reloads(self) -> None:
        store = RuntimeConfigStore(Settings(runtime_config_path=str(self.path)))
        store.update(selected_model="mistral", ollama_base_url="http://gpu-box:11434/", throttle_window_ms=100)

        reloaded = RuntimeConfigStore(Settings(runtime_config_path=str(self.path)))
        config = reloaded.get()
        self.assertEqual(config.selected_model, "mistral")
        self.assertEqual(config.ollama_base_url, "http://gpu-box:11434")
        self.assertEqual(config.throttle_window_ms, 100)

    def test_update_rejects_invalid_values(self) -> None:
        store = RuntimeConfigStore(Settings(runtime_config_path=str(self.path)))

        with self.assertRaises(ValueError):
            store.update(ollama_base_url="ftp://example.com")
        with self.assertRaises(ValueError):
            store.update(ollama_timeout_seconds=1)
        with self.assertRaises(ValueError):
            store.update(parallel_commands_max_workers=9)
        with self.assertRaises(ValueError):
            store.update(selected_model="  ")
        self.assertEqual(store.get().ollama_base_url, "http://localhost:11434")

    def test_invalid_file_keeps_defaults(self) -> None:
        self.path.write_text(json.dumps({"ollama_base_url": "not a url"}), encoding="utf-8")

        with self.assertLogs("lesson_agent.runtime_config", level="ERROR"):
            store = RuntimeConfigStore(Settings(runtime_config_path=str(self.path)))

        self.assertEqual(store.get().ollama_base_url, "http://localhost:11434")


if __name__ == "__main__":
    unittest.main()
