import json
import tempfile
import unittest
from pathlib import Path


def _settings(**kw):
    from mailteam.kernel.settings import ControllerSettings

    # Long interval: tests drive the poller by hand with poller.poll().
    kw.setdefault("poll_interval_seconds", 3600.0)
    kw.setdefault("kill_grace_seconds", 2.0)
    return ControllerSettings(**kw)


class _ControllerCase(unittest.TestCase):
    def setUp(self) -> None:
        from mailteam.daemon.controller import TeamController
        from mailteam.kernel.mailbox import MemoryMailbox

        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.mailbox = self.make_mailbox()
        if self.mailbox is None:
            self.mailbox = MemoryMailbox()
        self.ctrl = TeamController(
            team_name="t1",
            cwd=str(self.root),
            mailbox=self.mailbox,
            settings=_settings(),
            root=self.root,
        )
        self.ctrl.init()
        self.events = []
        for name in ["message", "idle", "shutdown:approved", "plan:approval_request", "permission:request"]:
            self.ctrl.on(name, lambda agent, payload, _n=name: self.events.append((_n, agent, payload)))
        self.ctrl.on("error", lambda err: self.events.append(("error", None, err)))

    def tearDown(self) -> None:
        self.ctrl.shutdown()
        self._td.cleanup()

    def make_mailbox(self):
        return None

    def worker_says(self, sender: str, message) -> None:
        from mailteam.contracts.v1 import InboxMessage
        from mailteam.kernel.codec import encode

        text = message if isinstance(message, str) else encode(message)
        self.mailbox.write("t1", "controller", InboxMessage(from_=sender, text=text))

    def inbox(self, agent: str):
        from mailteam.kernel.codec import decode

        return [decode(m) for m in self.mailbox.read_all("t1", agent)]

    def add_member(self, name: str) -> None:
        from mailteam.contracts.v1 import TeamMember
        from mailteam.kernel.team import agent_id

        self.ctrl.team.add_member(TeamMember(agent_id=agent_id(name, "t1"), name=name))


class TestControllerLifecycle(_ControllerCase):
    def test_identity_of_team_and_controller(self) -> None:
        config = self.ctrl.team.get_config()
        self.assertEqual(config.lead_agent_id, "controller@t1")
        self.assertEqual([m.agent_id for m in config.members], ["controller@t1"])
        self.assertEqual(self.mailbox.read_all("t1", "controller"), [])

    def test_init_twice_raises(self) -> None:
        from mailteam.kernel.errors import ControllerStateError

        with self.assertRaises(ControllerStateError):
            self.ctrl.init()

    def test_default_team_name(self) -> None:
        from mailteam.daemon.controller import TeamController

        ctrl = TeamController(settings=_settings(), root=self.root)
        self.assertRegex(ctrl.team_name, r"^team-[0-9a-f]{8}$")

    def test_operations_after_shutdown_raise(self) -> None:
        from mailteam.kernel.errors import ControllerStateError

        self.ctrl.shutdown()
        self.ctrl.shutdown()
        with self.assertRaises(ControllerStateError):
            self.ctrl.send("w1", "hi")
        with self.assertRaises(ControllerStateError):
            self.ctrl.spawn_agent("w1")


class TestControllerStorageCleanup(_ControllerCase):
    def make_mailbox(self):
        from mailteam.kernel.mailbox import FileMailbox

        return FileMailbox(self.root)

    def test_shutdown_deletes_team_storage(self) -> None:
        from mailteam.kernel.errors import NotFound

        self.ctrl.send("w1", "hello")
        self.ctrl.create_task("t", owner="w1")
        self.assertTrue((self.root / "teams" / "t1" / "inboxes" / "w1.json").exists())

        self.ctrl.shutdown()
        self.assertFalse((self.root / "teams" / "t1").exists())
        self.assertFalse((self.root / "tasks" / "t1").exists())
        with self.assertRaises(NotFound):
            self.mailbox.read_all("t1", "controller")
        with self.assertRaises(NotFound):
            self.ctrl.team.get_config()

    def test_names_that_leave_storage_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.ctrl.create_task("x", owner="../../../escaped")
        with self.assertRaises(ValueError):
            self.ctrl.send_permission_response("../../../escaped2", "q1", True)
        with self.assertRaises(ValueError):
            self.ctrl.send_plan_approval("../escaped3", "p1", True)
        with self.assertRaises(ValueError):
            self.ctrl.send_shutdown_request("../../escaped4")
        task_id = self.ctrl.create_task("y")
        with self.assertRaises(ValueError):
            self.ctrl.assign_task(task_id, "../escaped5")

        self.assertEqual(list(self.root.rglob("escaped*")), [])
        self.assertEqual([t.subject for t in self.ctrl.tasks.list()], ["y"])
        self.assertEqual(self.ctrl.pending_requests(), [])

    def test_poll_after_storage_loss_reports_error(self) -> None:
        from mailteam.kernel.errors import NotFound

        self.ctrl.team.destroy()
        self.assertEqual(self.ctrl.poller.poll(), [])
        errors = [e for e in self.events if e[0] == "error"]
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0][2], NotFound)


class TestControllerEvents(_ControllerCase):
    def test_idle_notification(self) -> None:
        from mailteam.contracts.v1 import IdleNotificationMessage

        self.worker_says("w1", IdleNotificationMessage(from_="w1", idle_reason="available", completed_task_id="3"))
        batch = self.ctrl.poller.poll()
        self.assertEqual(len(batch), 1)
        self.assertEqual(len(self.events), 1)
        kind, agent, payload = self.events[0]
        self.assertEqual((kind, agent), ("idle", "w1"))
        self.assertIsInstance(payload, IdleNotificationMessage)
        self.assertEqual(payload.completed_task_id, "3")
        self.assertEqual(self.ctrl.poller.poll(), [])

    def test_plain_and_unhandled_types_become_messages(self) -> None:
        from mailteam.contracts.v1 import InboxMessage, TaskCompletedMessage

        self.worker_says("w1", "the answer is 4")
        self.worker_says("w2", TaskCompletedMessage(from_="w2", task_id="1", task_subject="s"))
        self.worker_says("w1", '{"type": "brand_new", "x": 1}')
        self.ctrl.poller.poll()

        self.assertEqual([(k, a) for k, a, _ in self.events], [("message", "w1"), ("message", "w2"), ("message", "w1")])
        self.assertTrue(all(isinstance(p, InboxMessage) for _, _, p in self.events))
        self.assertEqual(self.events[0][2].text, "the answer is 4")
        self.assertEqual(json.loads(self.events[1][2].text)["type"], "task_completed")

    def test_listener_failure_is_reported_and_batch_continues(self) -> None:
        def boom(agent, payload):
            raise RuntimeError("listener broke")

        self.ctrl.on("message", boom)
        self.worker_says("w1", "one")
        self.worker_says("w1", "two")
        self.ctrl.poller.poll()

        texts = [p.text for k, _, p in self.events if k == "message"]
        self.assertEqual(texts, ["one", "two"])
        errors = [p for k, _, p in self.events if k == "error"]
        self.assertEqual(len(errors), 2)
        self.assertIsInstance(errors[0], RuntimeError)


    def test_blocking_calls_are_refused_inside_listeners(self) -> None:
        from mailteam.kernel.errors import ControllerStateError

        raised = []

        def wait_inside(agent, payload):
            for call in (lambda: self.ctrl.receive(agent, timeout=0.01), lambda: self.ctrl.await_ready(agent, timeout=0.01)):
                try:
                    call()
                except Exception as e:
                    raised.append(type(e))

        self.ctrl.on("message", wait_inside)
        self.worker_says("w1", "hello")
        self.ctrl.poller.poll()
        self.assertEqual(raised, [ControllerStateError, ControllerStateError])


class TestCorrelatedResponses(_ControllerCase):
    def test_permission_response_written_once(self) -> None:
        from mailteam.contracts.v1 import PermissionRequestMessage, PermissionResponseMessage

        self.worker_says(
            "w1",
            PermissionRequestMessage(request_id="perm-1", from_="w1", tool_name="Bash", description="ls", input={"command": "ls"}),
        )
        self.ctrl.poller.poll()
        self.assertEqual(self.events[0][0], "permission:request")
        self.assertEqual(self.events[0][2].tool_name, "Bash")
        pending = self.ctrl.pending_requests()
        self.assertEqual([(c.request_id, c.kind, c.agent_name) for c in pending], [("perm-1", "permission", "w1")])

        self.assertTrue(self.ctrl.send_permission_response("w1", "perm-1", True))
        self.assertFalse(self.ctrl.send_permission_response("w1", "perm-1", False))

        inbox = self.inbox("w1")
        self.assertEqual(len(inbox), 1)
        self.assertIsInstance(inbox[0], PermissionResponseMessage)
        self.assertEqual(inbox[0].request_id, "perm-1")
        self.assertTrue(inbox[0].approved)
        self.assertEqual(inbox[0].from_, "controller")
        self.assertEqual(self.ctrl.pending_requests(), [])
        self.assertTrue(self.ctrl.correlations.get("perm-1").resolved)

    def test_response_for_unknown_request_is_still_written(self) -> None:
        self.assertTrue(self.ctrl.send_permission_response("w1", "never-seen", False))
        self.assertEqual(self.inbox("w1")[0].request_id, "never-seen")

    def test_response_must_match_request_kind_and_agent(self) -> None:
        from mailteam.contracts.v1 import PermissionRequestMessage
        from mailteam.kernel.errors import NotFound

        self.worker_says("w1", PermissionRequestMessage(request_id="perm-2", from_="w1", tool_name="Bash"))
        self.ctrl.poller.poll()

        self.assertFalse(self.ctrl.send_plan_approval("w1", "perm-2", True))
        self.assertFalse(self.ctrl.send_permission_response("w2", "perm-2", True))
        for agent in ["w1", "w2"]:
            with self.assertRaises(NotFound):
                self.mailbox.read_all("t1", agent)
        self.assertEqual(self.ctrl.correlations.get("perm-2").state, "requested")

        self.assertTrue(self.ctrl.send_permission_response("w1", "perm-2", False))
        self.assertEqual([m.request_id for m in self.inbox("w1")], ["perm-2"])

    def test_plan_approval_flow(self) -> None:
        from mailteam.contracts.v1 import PlanApprovalRequestMessage, PlanApprovalResponseMessage

        self.worker_says("w1", PlanApprovalRequestMessage(request_id="plan-1", from_="w1", plan_content="1. do it"))
        self.worker_says("w1", PlanApprovalRequestMessage(request_id="plan-1", from_="w1", plan_content="1. do it"))
        self.ctrl.poller.poll()
        self.assertEqual([k for k, _, _ in self.events], ["plan:approval_request", "plan:approval_request"])
        self.assertEqual(len(self.ctrl.pending_requests()), 1)

        self.assertTrue(self.ctrl.send_plan_approval("w1", "plan-1", False, feedback="add tests"))
        self.assertFalse(self.ctrl.send_plan_approval("w1", "plan-1", True))
        inbox = self.inbox("w1")
        self.assertEqual(len(inbox), 1)
        self.assertIsInstance(inbox[0], PlanApprovalResponseMessage)
        self.assertFalse(inbox[0].approved)
        self.assertEqual(inbox[0].feedback, "add tests")

    def test_shutdown_handshake(self) -> None:
        from mailteam.contracts.v1 import ShutdownApprovedMessage, ShutdownRequestMessage

        rid = self.ctrl.send_shutdown_request("w1", reason="work done")
        self.assertRegex(rid, r"^shutdown-[0-9a-f]{8}@w1$")
        self.assertNotEqual(rid, self.ctrl.send_shutdown_request("w2"))

        inbox = self.inbox("w1")
        self.assertIsInstance(inbox[0], ShutdownRequestMessage)
        self.assertEqual(inbox[0].request_id, rid)
        self.assertEqual(inbox[0].reason, "work done")
        corr = self.ctrl.correlations.get(rid)
        self.assertEqual((corr.kind, corr.state), ("shutdown", "requested"))

        self.worker_says("w1", ShutdownApprovedMessage(request_id=rid, from_="w1", backend_type="in-process"))
        self.ctrl.poller.poll()
        self.assertEqual(self.events[0][0], "shutdown:approved")
        self.assertEqual(self.events[0][1], "w1")
        self.assertTrue(corr.resolved)
        self.assertEqual(corr.wait(0).request_id, rid)


class TestMessagingAndTasks(_ControllerCase):
    def test_broadcast_skips_controller(self) -> None:
        for name in ["w1", "w2", "w3"]:
            self.add_member(name)
        result = self.ctrl.broadcast("standup", summary="daily")
        self.assertTrue(result.ok)
        self.assertEqual(sorted(result.delivered), ["w1", "w2", "w3"])
        for name in ["w1", "w2", "w3"]:
            entries = self.mailbox.read_all("t1", name)
            self.assertEqual([(m.from_, m.text, m.summary) for m in entries], [("controller", "standup", "daily")])
        self.assertEqual(self.mailbox.read_all("t1", "controller"), [])

    def test_create_task_with_owner_sends_assignment(self) -> None:
        from mailteam.contracts.v1 import TaskAssignmentMessage

        first = self.ctrl.create_task("Write docs", description="README", owner="w1")
        second = self.ctrl.create_task("Unowned")
        self.assertEqual((first, second), ("1", "2"))

        inbox = self.inbox("w1")
        self.assertEqual(len(inbox), 1)
        self.assertIsInstance(inbox[0], TaskAssignmentMessage)
        self.assertEqual(inbox[0].task_id, "1")
        self.assertEqual(inbox[0].subject, "Write docs")
        self.assertEqual(inbox[0].assigned_by, "controller")
        self.assertEqual(self.ctrl.tasks.get("1").owner, "w1")

        task = self.ctrl.assign_task("2", "w2")
        self.assertEqual(task.owner, "w2")
        self.assertEqual(self.inbox("w2")[0].task_id, "2")

    def test_await_ready_for_unknown_agent(self) -> None:
        from mailteam.kernel.errors import NotFound

        with self.assertRaises(NotFound):
            self.ctrl.await_ready("ghost", timeout=0.01)

    def test_receive_from_agent_without_process(self) -> None:
        from mailteam.kernel.errors import AgentExitedError

        with self.assertRaises(AgentExitedError):
            self.ctrl.receive("ghost", timeout=0.01)


class TestBroadcastFailure(_ControllerCase):
    def make_mailbox(self):
        from mailteam.kernel.mailbox import MemoryMailbox

        class FlakyMailbox(MemoryMailbox):
            def write(self, team, agent, entry):
                if agent == "w2":
                    raise OSError("disk full")
                super().write(team, agent, entry)

        return FlakyMailbox()

    def test_broadcast_continues_past_failing_recipient(self) -> None:
        for name in ["w1", "w2", "w3"]:
            self.add_member(name)
        result = self.ctrl.broadcast("hello")
        self.assertFalse(result.ok)
        self.assertEqual(sorted(result.delivered), ["w1", "w3"])
        self.assertEqual(list(result.failed), ["w2"])
        self.assertIsInstance(result.failed["w2"], OSError)
        self.assertEqual(len(self.mailbox.read_all("t1", "w3")), 1)


if __name__ == "__main__":
    unittest.main()
