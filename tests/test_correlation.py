import threading
import unittest


class TestCorrelation(unittest.TestCase):
    def test_resolves_exactly_once(self) -> None:
        from mailteam.kernel.correlation import PendingCorrelation

        c = PendingCorrelation("q1", "w1", "permission", request={"x": 1})
        self.assertEqual(c.state, "requested")
        self.assertTrue(c.resolve("first"))
        self.assertFalse(c.resolve("second"))
        self.assertFalse(c.cancel(1))
        self.assertEqual(c.state, "resolved")
        self.assertEqual(c.outcome, "first")
        self.assertEqual(c.wait(0), "first")

    def test_cancel_fails_waiters(self) -> None:
        from mailteam.kernel.correlation import PendingCorrelation
        from mailteam.kernel.errors import AgentExitedError

        c = PendingCorrelation("p1", "w1", "plan")
        errors = []

        def waiter() -> None:
            try:
                c.wait(5)
            except AgentExitedError as e:
                errors.append(e)

        t = threading.Thread(target=waiter)
        t.start()
        self.assertTrue(c.cancel(137))
        t.join(5)
        self.assertTrue(c.cancelled)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].agent_name, "w1")
        self.assertEqual(errors[0].exit_code, 137)

    def test_wait_timeout(self) -> None:
        from mailteam.kernel.correlation import PendingCorrelation

        with self.assertRaises(TimeoutError):
            PendingCorrelation("s1", "w1", "shutdown").wait(0.01)

    def test_table_keeps_first_entry_and_cancels_per_agent(self) -> None:
        from mailteam.kernel.correlation import CorrelationTable

        table = CorrelationTable()
        a = table.open("q1", "w1", "permission")
        self.assertIs(table.open("q1", "w1", "permission"), a)
        table.open("q2", "w2", "permission")
        table.open("p1", "w1", "plan")
        self.assertEqual(len(table.pending()), 3)
        self.assertEqual({c.request_id for c in table.pending("w1")}, {"q1", "p1"})

        cancelled = table.cancel_agent("w1", None)
        self.assertEqual({c.request_id for c in cancelled}, {"q1", "p1"})
        self.assertEqual([c.request_id for c in table.pending()], ["q2"])
        self.assertEqual(table.cancel_agent("w1", None), [])

        table.cancel_all()
        self.assertEqual(table.pending(), [])
        self.assertIsNone(table.get("missing"))

    def test_resolved_entries_are_bounded(self) -> None:
        from mailteam.kernel.correlation import DEFAULT_MAX_RESOLVED, CorrelationTable

        self.assertEqual(CorrelationTable().max_resolved, DEFAULT_MAX_RESOLVED)
        table = CorrelationTable(max_resolved=3)
        still_open = table.open("open-1", "w1", "permission")
        for i in range(50):
            table.open(f"q{i}", "w1", "permission").resolve(True)
        table.open("last", "w1", "permission")

        self.assertLessEqual(len(table), 5)
        self.assertIs(table.get("open-1"), still_open)
        self.assertIsNone(table.get("q0"))
        self.assertTrue(table.get("q49").resolved)
        self.assertEqual({c.request_id for c in table.pending()}, {"open-1", "last"})

        table.clear()
        self.assertEqual(len(table), 0)


if __name__ == "__main__":
    unittest.main()
