from __future__ import annotations

import typing
import unittest

from lesson_agent.commands import (
    COMMAND_SPECS,
    Command,
    PARALLEL_SAFE_COMMANDS,
    CommandValidationError,
    CreateCodeBlock,
    SetTitle,
    UnknownCommandError,
    command_name,
    describe_commands,
    normalize_command,
    validate_command,
)


class NormalizeCommandTests(unittest.TestCase):
    def test_accepts_alias_keys(self) -> None:
        self.assertEqual(normalize_command({"tool": "set_icon", "parameters": {"icon": "x"}}), ("set_icon", {"icon": "x"}))
        self.assertEqual(normalize_command({"command": "set_icon", "arguments": '{"icon": "y"}'}), ("set_icon", {"icon": "y"}))

    def test_flat_parameters(self) -> None:
        self.assertEqual(normalize_command({"name": "set_title", "title": "Cells"}), ("set_title", {"title": "Cells"}))

    def test_malformed_commands(self) -> None:
        with self.assertRaises(CommandValidationError):
            normalize_command("set_title")
        with self.assertRaises(CommandValidationError):
            normalize_command({"params": {}})
        with self.assertRaises(CommandValidationError):
            normalize_command({"name": "set_title", "params": [1]})
        self.assertEqual(command_name(["nope"]), "?")


class ValidateCommandTests(unittest.TestCase):
    def test_valid_command_becomes_typed_variant(self) -> None:
        command = validate_command({"name": "set_title", "params": {"title": "Cells"}})
        self.assertIsInstance(command, SetTitle)
        self.assertEqual(command.title, "Cells")

    def test_defaults_are_applied(self) -> None:
        command = validate_command({"name": "create_code_block", "params": {"code": "print(1)"}})
        self.assertIsInstance(command, CreateCodeBlock)
        self.assertEqual(command.language, "javascript")
        self.assertIsNone(command.filename)

    def test_numeric_strings_are_coerced(self) -> None:
        command = validate_command({"name": "delete_block", "params": {"index": "2"}})
        self.assertEqual(command.index, 2)

    def test_unknown_command(self) -> None:
        with self.assertRaises(UnknownCommandError) as ctx:
            validate_command({"name": "launch_rocket", "params": {}})
        self.assertEqual(str(ctx.exception), "unknown command")
        self.assertEqual(ctx.exception.name, "launch_rocket")

    def test_validation_message_names_the_field(self) -> None:
        with self.assertRaises(CommandValidationError) as ctx:
            validate_command({"name": "update_block", "params": {"index": -1, "content": "x"}})
        self.assertIn("index", str(ctx.exception))

    def test_validation_location_omits_the_command_name(self) -> None:
        with self.assertRaises(CommandValidationError) as ctx:
            validate_command({"name": "set_title", "params": {}})
        self.assertEqual(str(ctx.exception), "title: Field required")

    def test_name_inside_params_cannot_change_the_command(self) -> None:
        command = validate_command({"name": "set_icon", "params": {"name": "set_title", "icon": "🧬"}})
        self.assertEqual(command.name, "set_icon")

    def test_quiz_answer_must_point_at_an_option(self) -> None:
        with self.assertRaises(CommandValidationError):
            validate_command(
                {"name": "create_quiz_block", "params": {"question": "Q?", "options": ["a", "b"], "correct_answer": 2}}
            )


class RegistryTests(unittest.TestCase):
    def test_parallel_safe_commands_are_registered(self) -> None:
        self.assertEqual(PARALLEL_SAFE_COMMANDS, frozenset({"set_title", "set_icon"}))
        self.assertTrue(PARALLEL_SAFE_COMMANDS <= set(COMMAND_SPECS))

    def test_description_lists_every_command(self) -> None:
        text = describe_commands()
        for name in COMMAND_SPECS:
            self.assertIn(f"- {name}(", text)
        self.assertIn("index: number", text)
        self.assertIn("filename: string (optional)", text)

    def test_command_union_matches_the_registry(self) -> None:
        variants = typing.get_args(typing.get_args(Command)[0])
        self.assertEqual({variant.model_fields["name"].default for variant in variants}, set(COMMAND_SPECS))
        for name, spec in COMMAND_SPECS.items():
            self.assertIn(spec.model, variants, name)


if __name__ == "__main__":
    unittest.main()
