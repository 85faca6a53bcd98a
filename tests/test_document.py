from __future__ import annotations

import unittest

from lesson_agent.document import Document, DocumentStore


class DocumentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.document = Document("doc_1")

    def test_new_document_has_one_block(self) -> None:
        self.assertEqual(len(self.document), 1)
        self.assertEqual(self.document.blocks[0].type, "text")

    def test_deleting_last_block_leaves_a_fresh_empty_block(self) -> None:
        only = self.document.blocks[0]
        self.assertTrue(self.document.delete_block(only.id))
        self.assertEqual(len(self.document), 1)
        replacement = self.document.blocks[0]
        self.assertNotEqual(replacement.id, only.id)
        self.assertEqual(replacement.type, "text")
        self.assertEqual(replacement.content, "")

    def test_add_after_anchor_and_append(self) -> None:
        first = self.document.blocks[0].id
        end = self.document.add_block({"type": "heading", "content": "End"})
        middle = self.document.add_block({"type": "text", "content": "Middle"}, after_id=first)
        self.assertEqual([b.id for b in self.document.blocks], [first, middle, end])

    def test_unknown_anchor_appends(self) -> None:
        added = self.document.add_block({"type": "text"}, after_id="missing")
        self.assertEqual(self.document.blocks[-1].id, added)

    def test_explicit_block_id(self) -> None:
        block_id = self.document.add_block({"type": "html"}, block_id="fixed")
        self.assertEqual(block_id, "fixed")
        with self.assertRaises(ValueError):
            self.document.add_block({"type": "html"}, block_id="fixed")

    def test_type_defaults(self) -> None:
        quiz_id = self.document.add_block({"type": "quiz", "content": "Q?"})
        image_id = self.document.add_block({"type": "image"})
        quiz = self.document.get_block(quiz_id)
        self.assertEqual(quiz.options, ["", ""])
        self.assertEqual(quiz.correct_answer, 0)
        self.assertEqual(self.document.get_block(image_id).caption, "")

    def test_rejects_unknown_type_and_field(self) -> None:
        with self.assertRaises(ValueError):
            self.document.add_block({"type": "table"})
        with self.assertRaises(ValueError):
            self.document.update_block(self.document.blocks[0].id, "colour", "red")

    def test_update_unknown_block_is_a_no_op(self) -> None:
        revision = self.document.revision
        self.assertFalse(self.document.update_block("missing", "content", "x"))
        self.assertEqual(self.document.revision, revision)

    def test_update_and_move_keep_identity(self) -> None:
        first = self.document.blocks[0].id
        second = self.document.add_block({"type": "text", "content": "two"})
        self.assertTrue(self.document.update_block(first, "content", "one"))
        self.assertTrue(self.document.move_block(first, 1))
        self.assertEqual([b.id for b in self.document.blocks], [second, first])
        self.assertEqual(self.document.get_block(first).content, "one")

    def test_title_icon_and_snapshot(self) -> None:
        self.document.set_title("Cells")
        self.document.set_icon("x")
        snapshot = self.document.snapshot()
        self.assertEqual(snapshot["title"], "Cells")
        self.assertEqual(snapshot["icon"], "x")
        self.assertEqual(len(snapshot["blocks"]), 1)
        self.assertEqual(snapshot["revision"], 2)


class DocumentStoreTests(unittest.TestCase):
    def test_create_and_get(self) -> None:
        store = DocumentStore()
        document = store.create(title="  ", icon=None)
        self.assertEqual(document.title, "Untitled Lesson")
        self.assertIs(store.get(document.id), document)
        self.assertEqual(len(document), 2)
        self.assertEqual([d.id for d in store.list_documents()], [document.id])
        self.assertIsNone(store.get("missing"))


if __name__ == "__main__":
    unittest.main()
