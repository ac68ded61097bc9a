"""Team controller: owns one team, its worker processes and the controller mailbox.

Workers talk to the controller only by writing into the `controller`
mailbox; the controller answers by writing into theirs. Everything a worker
sends is decoded by the inbox poller and turned into events:

    message                (name, InboxMessage)        prose and unhandled types
    idle                   (name, IdleNotificationMessage)
    shutdown:approved      (name, ShutdownApprovedMessage)
    plan:approval_request  (name, PlanApprovalRequestMessage)
    permission:request     (name, PermissionRequestMessage)
    agent:spawned          (name, pid)
    agent:exited           (name, exit code or None)
    error                  (exception)

Permission, plan and shutdown requests are tracked as correlations keyed by
request id; see kernel/correlation.py.
"""
from __future__ import annotations

import logging
import os
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..contracts.v1 import (
    InboxMessage,
    PermissionResponseMessage,
    PlanApprovalResponseMessage,
    ShutdownRequestMessage,
    StructuredMessage,
    TaskAssignmentMessage,
    TaskFile,
    TeamMember,
)
from ..kernel.codec import encode
from ..kernel.correlation import CorrelationTable, PendingCorrelation
from ..kernel.errors import AgentExitedError, ControllerStateError, NotFound, ProcessError
from ..kernel.mailbox import FileMailbox, Mailbox
from ..kernel.settings import ControllerSettings, load_settings
from ..kernel.tasks import TaskStore
from ..kernel.team import CONTROLLER_NAME, TeamStore, agent_id, validate_name
from ..runners.process import ProcessSupervisor, SpawnOptions, resolve_binary
from .events import ERROR, EventBus, Listener
from .handle import AgentHandle
from .poller import InboxPoller

_STATE_NEW = "new"
_STATE_RUNNING = "running"
_STATE_CLOSED = "closed"


@dataclass
class BroadcastResult:
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class CompatibilityResult:
    compatible: bool
    version: Optional[str] = None
    error: Optional[str] = None


class _ReadyGate:
    """Readiness of one spawn generation: becomes ready or failed, once."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self.ready = False
        self.exit_code: Optional[int] = None

    def mark_ready(self) -> None:
        if not self._done.is_set():
            self.ready = True
            self._done.set()

    def mark_exited(self, exit_code: Optional[int]) -> None:
        if not self._done.is_set():
            self.exit_code = exit_code
            self._done.set()

    def wait(self, name: str, timeout: Optional[float]) -> None:
        if not self._done.wait(timeout):
            raise TimeoutError(f'agent "{name}" did not become ready within {timeout}s')
        if not self.ready:
            raise AgentExitedError(name, self.exit_code, "before becoming ready")


class TeamController:
    def __init__(
        self,
        team_name: Optional[str] = None,
        cwd: Optional[str] = None,
        claude_binary: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        mailbox: Optional[Mailbox] = None,
        settings: Optional[ControllerSettings] = None,
        logger: Optional[logging.Logger] = None,
        root: Optional[Path] = None,
    ) -> None:
        self.root = Path(root) if root is not None else None
        self.settings = settings or load_settings(self.root)
        self.team_name = validate_name(team_name or f"team-{uuid.uuid4().hex[:8]}", what="team name")
        self.cwd = cwd or os.getcwd()
        self.claude_binary = claude_binary or self.settings.claude_binary
        self.env: Dict[str, str] = {**self.settings.env, **(env or {})}
        self.log = logger or logging.getLogger("mailteam.controller")

        self.mailbox = mailbox if mailbox is not None else FileMailbox(self.root)
        self.team = TeamStore(self.team_name, self.root)
        self.tasks = TaskStore(self.team_name, self.root)
        self.events = EventBus()
        self.correlations = CorrelationTable()
        self.processes = ProcessSupervisor(
            python=self.settings.python,
            kill_grace_seconds=self.settings.kill_grace_seconds,
        )
        self.poller = InboxPoller(
            self.mailbox,
            self.team_name,
            CONTROLLER_NAME,
            interval=self.settings.poll_interval_seconds,
            on_message=self._dispatch,
            on_error=self._on_poll_error,
        )

        self._lock = threading.Lock()
        self._respond_lock = threading.Lock()
        self._state = _STATE_NEW
        self._ready: Dict[str, _ReadyGate] = {}
        self._exit_codes: Dict[str, Optional[int]] = {}
        self._handles: Dict[str, AgentHandle] = {}

    def _extra(self, **kw: Any) -> Dict[str, Any]:
        return {"team": self.team_name, **kw}

    # ----- lifecycle -----

    def init(self) -> "TeamController":
        with self._lock:
            if self._state != _STATE_NEW:
                raise ControllerStateError(f"controller for team {self.team_name} already initialized")
            self._state = _STATE_RUNNING
        self.team.create(cwd=self.cwd)
        self.mailbox.ensure(self.team_name, CONTROLLER_NAME)
        self.poller.start()
        self.log.info(f"team {self.team_name} initialized", extra=self._extra(op="init"))
        return self

    def shutdown(self) -> None:
        """Stop polling, kill every agent, cancel open requests and delete team storage."""
        with self._lock:
            previous = self._state
            self._state = _STATE_CLOSED
        if previous != _STATE_RUNNING:
            return
        self.poller.stop()
        self.processes.kill_all()
        self.correlations.cancel_all()
        self.correlations.clear()
        with self._lock:
            gates = list(self._ready.values())
        for gate in gates:
            gate.mark_exited(None)
        self.mailbox.drop_team(self.team_name)
        self.team.destroy()
        self.log.info(f"team {self.team_name} shut down", extra=self._extra(op="shutdown"))

    @property
    def running(self) -> bool:
        return self._state == _STATE_RUNNING

    def _require_running(self) -> None:
        if self._state == _STATE_NEW:
            raise ControllerStateError("controller not initialized; call init() first")
        if self._state == _STATE_CLOSED:
            raise ControllerStateError(f"controller for team {self.team_name} has been shut down")

    def _require_blocking_allowed(self, op: str) -> None:
        if self.events.in_dispatch():
            raise ControllerStateError(f"{op}() waits for events and cannot be called from an event listener")

    def __enter__(self) -> "TeamController":
        return self.init()

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    # ----- events -----

    def on(self, event: str, listener: Listener) -> Listener:
        return self.events.on(event, listener)

    def off(self, event: str, listener: Listener) -> bool:
        return self.events.off(event, listener)

    def once(self, event: str, listener: Listener) -> Listener:
        return self.events.once(event, listener)

    def _on_poll_error(self, err: Exception) -> None:
        self.events.emit(ERROR, err)

    def _mark_ready(self, name: str) -> None:
        with self._lock:
            gate = self._ready.get(name)
        if gate is not None:
            gate.mark_ready()

    def _dispatch(self, entry: InboxMessage, decoded: StructuredMessage) -> None:
        name = entry.from_
        kind = decoded.type
        if kind == "idle_notification":
            self._mark_ready(name)
            self.events.emit("idle", name, decoded)
        elif kind == "shutdown_approved":
            corr = self.correlations.get(decoded.request_id)
            if corr is not None:
                corr.resolve(decoded)
            self.events.emit("shutdown:approved", name, decoded)
        elif kind == "plan_approval_request":
            self.correlations.open(decoded.request_id, name, "plan", decoded)
            self.events.emit("plan:approval_request", name, decoded)
        elif kind == "permission_request":
            self.correlations.open(decoded.request_id, name, "permission", decoded)
            self.events.emit("permission:request", name, decoded)
        else:
            self._mark_ready(name)
            self.events.emit("message", name, entry)

    # ----- agents -----

    def spawn_agent(
        self,
        name: str,
        type: str = "general-purpose",
        model: Optional[str] = None,
        cwd: Optional[str] = None,
        prompt: Optional[str] = None,
        color: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        permission_mode: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        plan_mode_required: Optional[bool] = None,
    ) -> AgentHandle:
        self._require_running()
        name = validate_name(name)
        if name == CONTROLLER_NAME:
            raise ValueError(f"agent name {CONTROLLER_NAME!r} is reserved")
        if self.processes.is_running(name):
            raise ProcessError(f'agent "{name}" is already running')

        aid = agent_id(name, self.team_name)
        agent_cwd = cwd or self.cwd
        config = self.team.get_config()
        self.team.add_member(
            TeamMember(
                agent_id=aid,
                name=name,
                agent_type=type or "general-purpose",
                model=model,
                prompt=prompt,
                color=color,
                plan_mode_required=plan_mode_required,
                cwd=agent_cwd,
            )
        )
        self.mailbox.ensure(self.team_name, name)
        if prompt:
            self._write(name, prompt)

        opts = SpawnOptions(
            team_name=self.team_name,
            agent_name=name,
            agent_id=aid,
            agent_type=type or None,
            model=model,
            cwd=agent_cwd,
            parent_session_id=config.lead_session_id,
            color=color,
            binary=self.claude_binary,
            permissions=list(permissions or []),
            permission_mode=permission_mode,
            teammate_mode=self.settings.teammate_mode,
            env={**self.env, **(env or {})},
        )
        gate = _ReadyGate()
        with self._lock:
            self._ready[name] = gate
            self._exit_codes.pop(name, None)
        # agent:spawned goes out before any agent:exited of the same process.
        with self.events.lock:
            try:
                proc = self.processes.spawn(opts, on_exit=self._exit_callback(name, gate))
            except ProcessError:
                with self._lock:
                    if self._ready.get(name) is gate:
                        del self._ready[name]
                raise
            self.log.info(f'agent "{name}" spawned (pid={proc.pid})', extra=self._extra(agent=name, pid=proc.pid))
            if self.settings.ready_on_spawn:
                gate.mark_ready()
            self.events.emit("agent:spawned", name, proc.pid)
        handle = AgentHandle(self, name)
        with self._lock:
            self._handles[name] = handle
        return handle

    def _exit_callback(self, name: str, gate: _ReadyGate) -> Callable[[Optional[int]], None]:
        def _on_exit(code: Optional[int]) -> None:
            with self._lock:
                self._exit_codes[name] = code
            gate.mark_exited(code)
            cancelled = self.correlations.cancel_agent(name, code)
            if cancelled:
                self.log.info(
                    f'cancelled {len(cancelled)} open request(s) of agent "{name}"',
                    extra=self._extra(agent=name),
                )
            self.events.emit("agent:exited", name, code)

        return _on_exit

    def get_agent(self, name: str) -> AgentHandle:
        with self._lock:
            handle = self._handles.get(name)
        if handle is None:
            raise NotFound(f'agent not spawned: "{name}"')
        return handle

    def kill_agent(self, name: str) -> None:
        self.processes.kill(name)

    def is_agent_running(self, name: str) -> bool:
        return self.processes.is_running(name)

    def exit_code(self, name: str) -> Optional[int]:
        with self._lock:
            return self._exit_codes.get(name)

    def await_ready(self, name: str, timeout: Optional[float] = None) -> None:
        self._require_blocking_allowed("await_ready")
        with self._lock:
            gate = self._ready.get(name)
        if gate is None:
            raise NotFound(f'agent not spawned: "{name}"')
        gate.wait(name, timeout)

    # ----- messaging -----

    def _write(self, agent: str, text: str, summary: Optional[str] = None) -> None:
        self.mailbox.write(
            self.team_name,
            agent,
            InboxMessage(from_=CONTROLLER_NAME, text=text, summary=summary),
        )

    def send(self, agent: str, text: str, summary: Optional[str] = None) -> None:
        self._require_running()
        self._write(validate_name(agent), text, summary)

    def broadcast(self, text: str, summary: Optional[str] = None) -> BroadcastResult:
        """Write `text` to every member except the controller; failures are per recipient."""
        self._require_running()
        result = BroadcastResult()
        for member in self.team.list_members():
            if member.name == CONTROLLER_NAME:
                continue
            try:
                self._write(member.name, text, summary)
            except Exception as e:
                self.log.warning(
                    f'broadcast to "{member.name}" failed: {e}',
                    extra=self._extra(agent=member.name, op="broadcast"),
                )
                result.failed[member.name] = e
            else:
                result.delivered.append(member.name)
        return result

    def receive(self, agent: str, timeout: Optional[float] = None, all: bool = False) -> Any:
        """Block until `agent` sends its next message.

        Returns the `InboxMessage`, or with `all=True` the list of every message
        from `agent` claimed by the same poll. Raises AgentExitedError when the
        agent exits first and TimeoutError when `timeout` elapses.
        Not callable from an event listener (ControllerStateError).
        """
        self._require_running()
        self._require_blocking_allowed("receive")
        cond = threading.Condition()
        got: List[InboxMessage] = []
        exited: List[Optional[int]] = []

        def _on_message(name: str, msg: InboxMessage) -> None:
            if name == agent:
                with cond:
                    got.append(msg)
                    cond.notify_all()

        def _on_exit(name: str, code: Optional[int]) -> None:
            if name == agent:
                with cond:
                    exited.append(code)
                    cond.notify_all()

        self.events.on("message", _on_message)
        self.events.on("agent:exited", _on_exit)
        try:
            if not self.processes.is_running(agent):
                raise AgentExitedError(agent, self.exit_code(agent), "before responding")
            with cond:
                if not cond.wait_for(lambda: bool(got or exited), timeout):
                    raise TimeoutError(f'no message from agent "{agent}" within {timeout}s')
                if not got:
                    raise AgentExitedError(agent, exited[0], "before responding")
            if not all:
                return got[0]
            self.poller.barrier()
            with cond:
                return list(got)
        finally:
            self.events.off("message", _on_message)
            self.events.off("agent:exited", _on_exit)

    # ----- correlated responses -----

    def _respond(self, agent: str, request_id: str, kind: str, message: StructuredMessage) -> bool:
        self._require_running()
        agent = validate_name(agent)
        with self._respond_lock:
            corr = self.correlations.get(request_id)
            if corr is not None and (corr.kind != kind or corr.agent_name != agent):
                self.log.warning(
                    f'{kind} response to "{agent}" not sent: request {request_id} is a '
                    f'{corr.kind} request of "{corr.agent_name}"',
                    extra=self._extra(agent=agent, request_id=request_id),
                )
                return False
            if corr is not None and corr.resolved:
                self.log.debug(
                    f"request {request_id} already resolved; response not sent",
                    extra=self._extra(agent=agent, request_id=request_id),
                )
                return False
            self._write(agent, encode(message))
            if corr is not None:
                corr.resolve(message)
        return True

    def send_permission_response(self, agent: str, request_id: str, approved: bool) -> bool:
        msg = PermissionResponseMessage(request_id=request_id, from_=CONTROLLER_NAME, approved=bool(approved))
        return self._respond(agent, request_id, "permission", msg)

    def send_plan_approval(
        self, agent: str, request_id: str, approved: bool, feedback: Optional[str] = None
    ) -> bool:
        msg = PlanApprovalResponseMessage(
            request_id=request_id,
            from_=CONTROLLER_NAME,
            approved=bool(approved),
            feedback=feedback,
        )
        return self._respond(agent, request_id, "plan", msg)

    def send_shutdown_request(self, agent: str, reason: Optional[str] = None) -> str:
        self._require_running()
        agent = validate_name(agent)
        request_id = f"shutdown-{uuid.uuid4().hex[:8]}@{agent}"
        msg = ShutdownRequestMessage(request_id=request_id, from_=CONTROLLER_NAME, reason=reason)
        self.correlations.open(request_id, agent, "shutdown", msg)
        self._write(agent, encode(msg))
        self.log.info(
            f'shutdown requested for agent "{agent}"',
            extra=self._extra(agent=agent, request_id=request_id),
        )
        return request_id

    def pending_requests(self) -> List[PendingCorrelation]:
        return self.correlations.pending()

    # ----- tasks -----

    def _notify_assignment(self, task: TaskFile) -> None:
        if not task.owner:
            return
        msg = TaskAssignmentMessage(
            task_id=task.id,
            subject=task.subject,
            description=task.description,
            assigned_by=CONTROLLER_NAME,
        )
        self._write(validate_name(task.owner, what="task owner"), encode(msg))

    def create_task(
        self,
        subject: str,
        description: str = "",
        owner: Optional[str] = None,
        active_form: Optional[str] = None,
        blocks: Optional[List[str]] = None,
        blocked_by: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._require_running()
        if owner:
            owner = validate_name(owner, what="task owner")
        task = self.tasks.create(
            subject=subject,
            description=description,
            owner=owner,
            active_form=active_form,
            blocks=blocks,
            blocked_by=blocked_by,
            metadata=metadata,
        )
        self._notify_assignment(task)
        return task.id

    def assign_task(self, task_id: str, owner: str) -> TaskFile:
        self._require_running()
        task = self.tasks.update(task_id, owner=validate_name(owner, what="task owner"))
        self._notify_assignment(task)
        return task

    # ----- environment -----

    def verify_compatibility(self) -> CompatibilityResult:
        """Run `<binary> --version` and report whether it answered."""
        try:
            binary = resolve_binary(self.claude_binary)
        except ProcessError as e:
            return CompatibilityResult(compatible=False, error=str(e))
        try:
            out = subprocess.run(
                [binary, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return CompatibilityResult(compatible=False, error=str(e))
        version = (out.stdout or "").strip().splitlines()
        if out.returncode != 0 or not version:
            err = (out.stderr or "").strip() or f"exit code {out.returncode}"
            return CompatibilityResult(compatible=False, error=err)
        return CompatibilityResult(compatible=True, version=version[0].strip())
