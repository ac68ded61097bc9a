import json
import tempfile
import threading
import unittest
from pathlib import Path


class _MailboxContract:
    """Shared checks; subclasses provide `make_mailbox()`."""

    def make_mailbox(self):  # pragma: no cover - overridden
        raise NotImplementedError

    def test_unread_entries_are_delivered_once(self) -> None:
        from mailteam.contracts.v1 import InboxMessage

        mb = self.make_mailbox()
        mb.write("t1", "controller", InboxMessage(from_="w1", text="one"))
        mb.write("t1", "controller", InboxMessage(from_="w2", text="two", summary="2"))

        first = mb.read_unread("t1", "controller")
        self.assertEqual([m.text for m in first], ["one", "two"])
        self.assertEqual([m.from_ for m in first], ["w1", "w2"])
        self.assertTrue(all(not m.read for m in first))
        self.assertEqual(first[1].summary, "2")

        self.assertEqual(mb.read_unread("t1", "controller"), [])

        mb.write("t1", "controller", InboxMessage(from_="w1", text="three"))
        self.assertEqual([m.text for m in mb.read_unread("t1", "controller")], ["three"])

        stored = mb.read_all("t1", "controller")
        self.assertEqual([m.text for m in stored], ["one", "two", "three"])
        self.assertTrue(all(m.read for m in stored))

    def test_write_forces_unread(self) -> None:
        from mailteam.contracts.v1 import InboxMessage

        mb = self.make_mailbox()
        mb.write("t1", "w1", InboxMessage(from_="controller", text="hi", read=True))
        self.assertEqual(len(mb.read_unread("t1", "w1")), 1)

    def test_missing_mailbox_raises_not_found(self) -> None:
        from mailteam.kernel.errors import NotFound

        mb = self.make_mailbox()
        with self.assertRaises(NotFound):
            mb.read_all("nope", "controller")
        with self.assertRaises(NotFound):
            mb.read_unread("nope", "controller")

    def test_ensure_and_drop_team(self) -> None:
        from mailteam.contracts.v1 import InboxMessage
        from mailteam.kernel.errors import NotFound

        mb = self.make_mailbox()
        mb.ensure("t1", "controller")
        self.assertEqual(mb.read_all("t1", "controller"), [])
        mb.write("t1", "controller", InboxMessage(from_="w1", text="x"))
        mb.ensure("t1", "controller")
        self.assertEqual(len(mb.read_all("t1", "controller")), 1)

        mb.drop_team("t1")
        with self.assertRaises(NotFound):
            mb.read_unread("t1", "controller")

    def test_concurrent_writers_do_not_lose_entries(self) -> None:
        from mailteam.contracts.v1 import InboxMessage

        mb = self.make_mailbox()
        mb.ensure("t1", "controller")
        claimed = []

        def writer(n: int) -> None:
            for i in range(10):
                mb.write("t1", "controller", InboxMessage(from_=f"w{n}", text=f"{n}:{i}"))

        def reader() -> None:
            for _ in range(20):
                claimed.extend(m.text for m in mb.read_unread("t1", "controller"))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        threads.append(threading.Thread(target=reader))
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        claimed.extend(m.text for m in mb.read_unread("t1", "controller"))

        self.assertEqual(len(claimed), 40)
        self.assertEqual(len(set(claimed)), 40)
        self.assertEqual(len(mb.read_all("t1", "controller")), 40)


class TestMemoryMailbox(_MailboxContract, unittest.TestCase):
    def make_mailbox(self):
        from mailteam.kernel.mailbox import MemoryMailbox

        return MemoryMailbox()


class TestFileMailbox(_MailboxContract, unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    def make_mailbox(self):
        from mailteam.kernel.mailbox import FileMailbox

        return FileMailbox(self.root)

    def test_on_disk_layout_is_camel_case_json_array(self) -> None:
        from mailteam.contracts.v1 import InboxMessage

        mb = self.make_mailbox()
        mb.write("t1", "w1", InboxMessage(from_="controller", text="hi", color="blue"))

        p = self.root / "teams" / "t1" / "inboxes" / "w1.json"
        self.assertEqual(mb.path("t1", "w1"), p)
        docs = json.loads(p.read_text(encoding="utf-8"))
        self.assertEqual(len(docs), 1)
        self.assertEqual(docs[0]["from"], "controller")
        self.assertEqual(docs[0]["text"], "hi")
        self.assertEqual(docs[0]["color"], "blue")
        self.assertIs(docs[0]["read"], False)
        self.assertNotIn("summary", docs[0])

    def test_entries_written_by_workers_are_read(self) -> None:
        mb = self.make_mailbox()
        p = self.root / "teams" / "t1" / "inboxes" / "controller.json"
        p.parent.mkdir(parents=True)
        p.write_text(
            json.dumps(
                [
                    {"from": "w1", "text": "done", "timestamp": "2026-01-01T00:00:00.000Z", "read": False, "extra": 1},
                    "garbage",
                    {"from": "w1", "text": "old", "timestamp": "2026-01-01T00:00:00.000Z", "read": True},
                ]
            ),
            encoding="utf-8",
        )
        got = mb.read_unread("t1", "controller")
        self.assertEqual([m.text for m in got], ["done"])
        docs = json.loads(p.read_text(encoding="utf-8"))
        self.assertIs(docs[0]["read"], True)
        self.assertEqual(docs[0]["extra"], 1)

    def test_unreadable_mailbox_is_left_untouched(self) -> None:
        from mailteam.contracts.v1 import InboxMessage
        from mailteam.kernel.errors import StorageError

        mb = self.make_mailbox()
        mb.write("t1", "w1", InboxMessage(from_="controller", text="one"))
        p = mb.path("t1", "w1")
        raw = p.read_bytes()
        broken = raw.replace(b"one", b"\xffne")
        p.write_bytes(broken)

        with self.assertRaises(StorageError):
            mb.write("t1", "w1", InboxMessage(from_="controller", text="two"))
        with self.assertRaises(StorageError):
            mb.read_unread("t1", "w1")
        with self.assertRaises(StorageError):
            mb.read_all("t1", "w1")
        self.assertEqual(p.read_bytes(), broken)

        p.write_bytes(raw)
        mb.write("t1", "w1", InboxMessage(from_="controller", text="two"))
        self.assertEqual([m.text for m in mb.read_all("t1", "w1")], ["one", "two"])

        p.write_text('{"from": "w1"}', encoding="utf-8")
        with self.assertRaises(StorageError):
            mb.read_unread("t1", "w1")

    def test_loosely_typed_entries_are_claimed_and_delivered(self) -> None:
        mb = self.make_mailbox()
        p = self.root / "teams" / "t1" / "inboxes" / "controller.json"
        p.parent.mkdir(parents=True)
        p.write_text(
            json.dumps(
                [
                    {"from": "w1", "text": "hi", "timestamp": 1700000000000, "read": False},
                    {"from": "w1", "text": {"type": "idle_notification", "from": "w1"}, "read": False},
                    {"from": "w2", "read": False},
                ]
            ),
            encoding="utf-8",
        )
        got = mb.read_unread("t1", "controller")
        self.assertEqual(len(got), 3)
        self.assertEqual(got[0].text, "hi")
        self.assertEqual(got[0].timestamp, "2023-11-14T22:13:20.000Z")
        self.assertEqual(json.loads(got[1].text)["type"], "idle_notification")
        self.assertEqual(got[2].from_, "w2")
        self.assertEqual(json.loads(got[2].text), {"from": "w2", "read": False})
        self.assertEqual(mb.read_unread("t1", "controller"), [])

    def test_agent_name_cannot_leave_the_inboxes_directory(self) -> None:
        from mailteam.contracts.v1 import InboxMessage

        mb = self.make_mailbox()
        for bad in ["../../../escaped", "..", "a/b"]:
            with self.assertRaises(ValueError):
                mb.write("t1", bad, InboxMessage(from_="controller", text="x"))
        self.assertFalse((self.root / "escaped.json").exists())
        self.assertFalse((self.root / "teams").exists())

    def test_read_of_deleted_team_does_not_recreate_it(self) -> None:
        from mailteam.kernel.errors import NotFound

        mb = self.make_mailbox()
        with self.assertRaises(NotFound):
            mb.read_unread("gone", "controller")
        self.assertFalse((self.root / "teams" / "gone").exists())


if __name__ == "__main__":
    unittest.main()
