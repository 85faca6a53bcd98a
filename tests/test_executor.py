from __future__ import annotations

import asyncio
import time
import unittest
from typing import Any

from lesson_agent.cancellation import CancelToken
from lesson_agent.commands import Command
from lesson_agent.document import Document
from lesson_agent.executor import CommandExecutor, ExecutionContext, extract_html
from lesson_agent.runtime_config import RuntimeConfig
from lesson_agent.transport import BackendConnectionError
from lesson_agent.types import CommandResult, StreamResult


class _FakeRuntimeConfigStore:
    def __init__(self, config: RuntimeConfig):
        self._config = config

    def get(self) -> RuntimeConfig:
        return self._config


class _RecordingExecutor(CommandExecutor):
    def __init__(self, delays_by_command: dict[str, float], **kwargs: Any):
        super().__init__(**kwargs)
        self.delays_by_command = delays_by_command
        self.spans: list[tuple[str, float, float]] = []

    async def _apply(self, command: Command, context: ExecutionContext) -> str:
        started = time.monotonic()
        await asyncio.sleep(self.delays_by_command.get(command.name, 0.01))
        detail = await super()._apply(command, context)
        self.spans.append((command.name, started, time.monotonic()))
        return detail


class _FakeStreamClient:
    def __init__(self, pieces: list[str], *, error: Exception | None = None):
        self.pieces = pieces
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def chat_stream(self, messages: list[dict[str, Any]], **kwargs: Any) -> StreamResult:
        self.calls.append({"messages": messages, **kwargs})
        if self.error is not None:
            raise self.error
        accumulated = ""
        for piece in self.pieces:
            accumulated += piece
            kwargs["on_chunk"](piece, accumulated)
        return StreamResult(text=accumulated, done=True)


def _cmd(name: str, **params: Any) -> dict[str, Any]:
    return {"name": name, "params": params}


class CommandExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.document = Document("doc_1")
        self.context = ExecutionContext(document=self.document, model="test-model", turn_id="msg_1")

    async def test_parallel_batch_finishes_before_ordered_commands(self) -> None:
        executor = _RecordingExecutor({"set_title": 0.15, "set_icon": 0.15, "create_heading_block": 0.02})
        commands = [
            _cmd("create_heading_block", text="A"),
            _cmd("set_title", title="Cells"),
            _cmd("create_heading_block", text="B"),
            _cmd("set_icon", icon="x"),
            _cmd("delete_block", index=0),
        ]

        results = await executor.execute(commands, self.context)

        self.assertEqual(
            [r.name for r in results],
            ["set_title", "set_icon", "create_heading_block", "create_heading_block", "delete_block"],
        )
        self.assertEqual([r.index for r in results], [1, 3, 0, 2, 4])
        self.assertEqual([r.execution_mode for r in results], ["parallel", "parallel", "sequential", "sequential", "sequential"])
        self.assertTrue(all(r.success for r in results))
        self.assertTrue(all(r.turn_id == "msg_1" for r in results))

        parallel = [span for span in executor.spans if span[0] in {"set_title", "set_icon"}]
        ordered = [span for span in executor.spans if span[0] not in {"set_title", "set_icon"}]
        self.assertLess(max(s[1] for s in parallel), min(s[2] for s in parallel))
        parallel_end = max(s[2] for s in parallel)
        self.assertTrue(all(s[1] >= parallel_end for s in ordered))
        for previous, current in zip(ordered, ordered[1:]):
            self.assertGreaterEqual(current[1], previous[2])

        self.assertEqual(self.document.title, "Cells")
        self.assertEqual(self.document.icon, "x")
        self.assertEqual([b.content for b in self.document.blocks], ["A", "B"])

    async def test_validation_failure_does_not_stop_other_commands(self) -> None:
        executor = CommandExecutor()
        results = await executor.execute(
            [_cmd("set_title"), _cmd("create_heading_block", text="Hi")],
            self.context,
        )

        self.assertFalse(results[0].success)
        self.assertIn("title", results[0].detail)
        self.assertTrue(results[1].success)
        self.assertEqual(self.document.blocks[-1].content, "Hi")

    async def test_unknown_command_is_reported_in_place(self) -> None:
        executor = CommandExecutor()
        results = await executor.execute(
            [_cmd("create_heading_block", text="A"), _cmd("explode"), _cmd("create_heading_block", text="B")],
            self.context,
        )

        self.assertEqual([r.success for r in results], [True, False, True])
        self.assertEqual(results[1].name, "explode")
        self.assertEqual(results[1].detail, "unknown command")

    async def test_invalid_index_fails_only_that_command(self) -> None:
        executor = CommandExecutor()
        results = await executor.execute(
            [_cmd("update_block", index=99, content="x"), _cmd("update_block", index=0, content="y")],
            self.context,
        )

        self.assertEqual(results[0].detail, "Invalid index: 99")
        self.assertTrue(results[1].success)
        self.assertEqual(self.document.blocks[0].content, "y")

    async def test_cancellation_stops_issuing_ordered_commands(self) -> None:
        token = CancelToken()
        context = ExecutionContext(document=self.document, model="test-model", cancel=token)
        executor = CommandExecutor()

        def on_executed(_result: CommandResult) -> None:
            token.cancel()

        results = await executor.execute(
            [_cmd("create_heading_block", text="A"), _cmd("create_heading_block", text="B")],
            context,
            on_executed=on_executed,
        )

        self.assertEqual(len(results), 1)
        self.assertEqual([b.content for b in self.document.blocks][-1], "A")
        self.assertEqual(len(self.document), 2)

    async def test_failing_result_callback_does_not_lose_results(self) -> None:
        context = ExecutionContext(document=self.document, model="test-model")

        def on_executed(_result: CommandResult) -> None:
            raise KeyError("status")

        with self.assertLogs("lesson_agent.executor", level="ERROR"):
            results = await CommandExecutor().execute(
                [_cmd("set_title", title="X"), _cmd("create_heading_block", text="A")],
                context,
                on_executed=on_executed,
            )

        self.assertEqual([r.success for r in results], [True, True])
        self.assertEqual(self.document.title, "X")

    async def test_cancelled_before_batch_runs_nothing(self) -> None:
        token = CancelToken()
        token.cancel()
        context = ExecutionContext(document=self.document, model="test-model", cancel=token)

        results = await CommandExecutor().execute([_cmd("set_title", title="X"), _cmd("delete_block", index=0)], context)

        self.assertEqual(results, [])
        self.assertEqual(self.document.title, "Untitled Lesson")

    async def test_parallel_disabled_runs_everything_in_parsed_order(self) -> None:
        executor = CommandExecutor(
            runtime_config_store=_FakeRuntimeConfigStore(RuntimeConfig(parallel_commands_enabled=False)),  # type: ignore[arg-type]
        )
        results = await executor.execute(
            [_cmd("create_heading_block", text="A"), _cmd("set_title", title="T")],
            self.context,
        )

        self.assertEqual([r.name for r in results], ["create_heading_block", "set_title"])
        self.assertEqual({r.execution_mode for r in results}, {"sequential"})

    async def test_create_block_variants(self) -> None:
        executor = CommandExecutor()
        first_id = self.document.blocks[0].id
        results = await executor.execute(
            [
                _cmd("create_block", content="<p>hi</p>"),
                _cmd("create_code_block", code="print(1)", language="python", filename="a.py"),
                _cmd("create_quiz_block", question="Q?", options=["a", "b", "c"], correct_answer=2),
                _cmd("create_block", content="<p>first</p>", after_index=0),
                _cmd("move_block", index=1, to_index=4),
            ],
            self.context,
        )

        self.assertTrue(all(r.success for r in results), [r.detail for r in results])
        types = [b.type for b in self.document.blocks]
        self.assertEqual(types, ["text", "html", "code", "quiz", "html"])
        self.assertEqual(self.document.blocks[0].id, first_id)
        self.assertEqual(self.document.blocks[4].content, "<p>first</p>")
        self.assertTrue(self.document.blocks[1].show_preview)
        self.assertEqual(self.document.blocks[2].language, "python")
        self.assertEqual(self.document.blocks[3].options, ["a", "b", "c"])

    async def test_stream_html_block_fills_placeholder(self) -> None:
        client = _FakeStreamClient(["```html\n<div>Hel", "lo</div>\n```"])
        executor = CommandExecutor(client=client)  # type: ignore[arg-type]

        results = await executor.execute([_cmd("stream_html_block", prompt="cells", style="header")], self.context)

        self.assertTrue(results[0].success, results[0].detail)
        self.assertEqual(self.document.blocks[-1].type, "html")
        self.assertEqual(self.document.blocks[-1].content, "<div>Hello</div>")
        self.assertEqual(client.calls[0]["model"], "test-model")
        self.assertIn("cells", client.calls[0]["messages"][0]["content"])

    async def test_stream_html_block_failure_marks_block(self) -> None:
        client = _FakeStreamClient([], error=BackendConnectionError("backend down"))
        executor = CommandExecutor(client=client)  # type: ignore[arg-type]

        results = await executor.execute([_cmd("stream_html_block", prompt="cells")], self.context)

        self.assertFalse(results[0].success)
        self.assertEqual(results[0].detail, "backend down")
        self.assertIn("Generation failed", self.document.blocks[-1].content)


class ExtractHtmlTests(unittest.TestCase):
    def test_strips_fences_and_leading_prose(self) -> None:
        self.assertEqual(extract_html("Sure!\n```html\n<section>x</section>\n```"), "<section>x</section>")
        self.assertEqual(extract_html("no markup yet"), "")


if __name__ == "__main__":
    unittest.main()
