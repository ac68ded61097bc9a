"""Simplified API over TeamController.

    from mailteam.client import AgentOptions, ask

    print(ask("What is 2 + 2?", AgentOptions(model="haiku")))

    with Agent.create(AgentOptions(auto_approve=True)) as agent:
        print(agent.ask("Summarize README.md"))

    with Session.create(AgentOptions(model="sonnet")) as session:
        reviewer = session.agent("reviewer")
        coder = session.agent("coder", permissions="edit")

An `Agent` re-emits its controller's events for that agent only:
`message(text)`, `idle()`, `permission(PermissionRequestInfo)`,
`plan(PlanRequestInfo)`, `exit(code)`, `error(exc)`.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .contracts.v1 import InboxMessage, PermissionRequestMessage, PlanApprovalRequestMessage
from .daemon.controller import TeamController
from .daemon.events import ERROR, EventBus, Listener
from .daemon.handle import AgentHandle
from .kernel.errors import AgentExitedError, ControllerStateError
from .util.obslog import parse_level

DEFAULT_READY_TIMEOUT = 60.0
DEFAULT_ASK_TIMEOUT = 120.0

SEND_MESSAGE_REMINDER = (
    "IMPORTANT: You MUST send your complete answer back using the SendMessage tool. "
    "Do NOT just think your answer; use the SendMessage tool to reply."
)

_PERMISSION_PRESETS: Dict[str, Optional[str]] = {
    "full": None,
    "edit": "acceptEdits",
    "plan": "plan",
    "ask": "default",
}


@dataclass
class AgentOptions:
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    # Milliseconds, passed through to the worker as API_TIMEOUT_MS.
    timeout: Optional[int] = None
    cwd: Optional[str] = None
    permissions: Optional[str] = None
    auto_approve: Union[bool, List[str], None] = None
    on_permission: Optional[Callable[["PermissionRequestInfo"], Any]] = None
    on_plan: Optional[Callable[["PlanRequestInfo"], Any]] = None
    env: Dict[str, str] = field(default_factory=dict)
    log_level: str = "WARNING"
    name: Optional[str] = None
    type: str = "general-purpose"
    claude_binary: Optional[str] = None
    ready_timeout: float = DEFAULT_READY_TIMEOUT


def build_env(options: AgentOptions) -> Dict[str, str]:
    env = dict(options.env)
    if options.api_key:
        env["ANTHROPIC_AUTH_TOKEN"] = options.api_key
    if options.base_url:
        env["ANTHROPIC_BASE_URL"] = options.base_url
    if options.timeout is not None:
        env["API_TIMEOUT_MS"] = str(options.timeout)
    return env


def resolve_permissions(preset: Optional[str]) -> Optional[str]:
    """Map a permission preset to the worker's --permission-mode value (None: no flag)."""
    if preset is None:
        return None
    if preset not in _PERMISSION_PRESETS:
        raise ValueError(f"unknown permission preset: {preset!r} (expected one of {sorted(_PERMISSION_PRESETS)})")
    return _PERMISSION_PRESETS[preset]


class _OneShot:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._used = False

    def claim(self) -> bool:
        with self._lock:
            if self._used:
                return False
            self._used = True
            return True


class PermissionRequestInfo:
    def __init__(self, controller: TeamController, agent_name: str, request: PermissionRequestMessage) -> None:
        self._controller = controller
        self._agent_name = agent_name
        self._once = _OneShot()
        self.request = request
        self.request_id = request.request_id
        self.tool_name = request.tool_name
        self.description = request.description
        self.input = request.input

    def approve(self) -> bool:
        if not self._once.claim():
            return False
        return self._controller.send_permission_response(self._agent_name, self.request_id, True)

    def reject(self) -> bool:
        if not self._once.claim():
            return False
        return self._controller.send_permission_response(self._agent_name, self.request_id, False)


class PlanRequestInfo:
    def __init__(self, controller: TeamController, agent_name: str, request: PlanApprovalRequestMessage) -> None:
        self._controller = controller
        self._agent_name = agent_name
        self._once = _OneShot()
        self.request = request
        self.request_id = request.request_id
        self.plan_content = request.plan_content

    def approve(self, feedback: Optional[str] = None) -> bool:
        if not self._once.claim():
            return False
        return self._controller.send_plan_approval(self._agent_name, self.request_id, True, feedback)

    def reject(self, feedback: str) -> bool:
        if not self._once.claim():
            return False
        return self._controller.send_plan_approval(self._agent_name, self.request_id, False, feedback)


def _new_controller(options: AgentOptions, team_name: str) -> TeamController:
    logger = logging.getLogger("mailteam.client")
    logger.setLevel(parse_level(options.log_level))
    return TeamController(
        team_name=team_name,
        cwd=options.cwd,
        claude_binary=options.claude_binary,
        env=build_env(options),
        logger=logger,
    )


class Agent:
    """One worker agent with blocking ask/receive helpers."""

    def __init__(
        self,
        controller: TeamController,
        handle: AgentHandle,
        *,
        owns_controller: bool,
        options: Optional[AgentOptions] = None,
    ) -> None:
        self.controller = controller
        self.handle = handle
        self._owns_controller = owns_controller
        self._closed = False
        self._events = EventBus()
        self._bound: List[Tuple[str, Listener]] = []
        self._wire_events()
        if options is not None:
            self._wire_behavior(options)

    @classmethod
    def create(cls, options: Optional[AgentOptions] = None) -> "Agent":
        """Start a private controller, spawn one agent and wait until it is ready."""
        opts = options or AgentOptions()
        controller = _new_controller(opts, f"claude-{uuid.uuid4().hex[:8]}")
        controller.init()
        try:
            return cls._spawn(controller, opts, owns_controller=True)
        except BaseException:
            controller.shutdown()
            raise

    @classmethod
    def _spawn(cls, controller: TeamController, opts: AgentOptions, *, owns_controller: bool) -> "Agent":
        name = opts.name or f"agent-{uuid.uuid4().hex[:8]}"
        handle = controller.spawn_agent(
            name,
            type=opts.type or "general-purpose",
            model=opts.model,
            cwd=opts.cwd,
            permission_mode=resolve_permissions(opts.permissions),
            env=None if owns_controller else build_env(opts),
        )
        agent = cls(controller, handle, owns_controller=owns_controller, options=opts)
        try:
            controller.await_ready(name, timeout=opts.ready_timeout)
        except BaseException:
            agent.close()
            raise
        return agent

    @property
    def name(self) -> str:
        return self.handle.name

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid

    @property
    def is_running(self) -> bool:
        return self.handle.is_running

    def on(self, event: str, listener: Listener) -> Listener:
        return self._events.on(event, listener)

    def off(self, event: str, listener: Listener) -> bool:
        return self._events.off(event, listener)

    def _ensure_open(self) -> None:
        if self._closed:
            raise ControllerStateError(f'agent "{self.name}" has been closed')

    def ask(self, question: str, timeout: float = DEFAULT_ASK_TIMEOUT) -> str:
        """Send `question` and block for the agent's next message."""
        self._ensure_open()
        waiter = self._subscribe()
        try:
            self.handle.send(f"{question}\n\n{SEND_MESSAGE_REMINDER}")
            return waiter.wait(timeout)
        finally:
            waiter.cancel()

    def send(self, text: str) -> None:
        self._ensure_open()
        self.handle.send(text)

    def receive(self, timeout: float = DEFAULT_ASK_TIMEOUT) -> str:
        self._ensure_open()
        waiter = self._subscribe()
        try:
            return waiter.wait(timeout)
        finally:
            waiter.cancel()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unwire_events()
        if self._owns_controller:
            self.controller.shutdown()
        else:
            self.handle.kill()

    def mark_closed(self) -> None:
        """Detach without touching the process; the owning session shuts it down."""
        self._closed = True
        self._unwire_events()

    def __enter__(self) -> "Agent":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _subscribe(self) -> "_ReplyWaiter":
        return _ReplyWaiter(self)

    def _wire_events(self) -> None:
        me = self.name
        controller = self.controller

        def _on_message(name: str, msg: InboxMessage) -> None:
            if name == me:
                self._events.emit("message", msg.text)

        def _on_idle(name: str, _details: Any) -> None:
            if name == me:
                self._events.emit("idle")

        def _on_permission(name: str, req: PermissionRequestMessage) -> None:
            if name == me:
                self._events.emit("permission", PermissionRequestInfo(controller, me, req))

        def _on_plan(name: str, req: PlanApprovalRequestMessage) -> None:
            if name == me:
                self._events.emit("plan", PlanRequestInfo(controller, me, req))

        def _on_exit(name: str, code: Optional[int]) -> None:
            if name == me:
                self._events.emit("exit", code)

        def _on_error(err: Exception) -> None:
            self._events.emit(ERROR, err)

        self._bound = [
            ("message", _on_message),
            ("idle", _on_idle),
            ("permission:request", _on_permission),
            ("plan:approval_request", _on_plan),
            ("agent:exited", _on_exit),
            (ERROR, _on_error),
        ]
        for event, fn in self._bound:
            controller.on(event, fn)

    def _unwire_events(self) -> None:
        for event, fn in self._bound:
            self.controller.off(event, fn)
        self._bound = []

    def _wire_behavior(self, options: AgentOptions) -> None:
        auto = options.auto_approve
        if auto is True:
            self.on("permission", lambda req: req.approve())
            self.on("plan", lambda req: req.approve())
        elif isinstance(auto, list):
            allowed = set(auto)
            self.on("permission", lambda req: req.approve() if req.tool_name in allowed else req.reject())
        # Inline callbacks run after auto-approval; a request already answered stays answered.
        if options.on_permission is not None:
            self.on("permission", options.on_permission)
        if options.on_plan is not None:
            self.on("plan", options.on_plan)


class _ReplyWaiter:
    """Subscribed before the question goes out so a fast reply is not missed."""

    def __init__(self, agent: Agent) -> None:
        self._agent = agent
        self._cond = threading.Condition()
        self._text: Optional[str] = None
        self._exited = False
        self._exit_code: Optional[int] = None
        agent.on("message", self._on_message)
        agent.on("exit", self._on_exit)

    def _on_message(self, text: str) -> None:
        with self._cond:
            if self._text is None:
                self._text = text
                self._cond.notify_all()

    def _on_exit(self, code: Optional[int]) -> None:
        with self._cond:
            self._exited = True
            self._exit_code = code
            self._cond.notify_all()

    def wait(self, timeout: Optional[float]) -> str:
        if self._agent.controller.events.in_dispatch():
            raise ControllerStateError("ask()/receive() cannot be called from an event listener")
        if not self._agent.is_running:
            raise AgentExitedError(self._agent.name, self._agent.controller.exit_code(self._agent.name), "before responding")
        with self._cond:
            if not self._cond.wait_for(lambda: self._text is not None or self._exited, timeout):
                raise TimeoutError(f"timeout ({timeout}s) waiting for a response from {self._agent.name}")
            if self._text is None:
                raise AgentExitedError(self._agent.name, self._exit_code, "before responding")
            return self._text

    def cancel(self) -> None:
        self._agent.off("message", self._on_message)
        self._agent.off("exit", self._on_exit)


class Session:
    """Several agents sharing one controller (one team)."""

    def __init__(self, controller: TeamController, defaults: AgentOptions) -> None:
        self.controller = controller
        self.defaults = defaults
        self._agents: Dict[str, Agent] = {}
        self._closed = False

    @classmethod
    def create(cls, options: Optional[AgentOptions] = None, team_name: Optional[str] = None) -> "Session":
        opts = options or AgentOptions()
        controller = _new_controller(opts, team_name or f"session-{uuid.uuid4().hex[:8]}")
        controller.init()
        return cls(controller, opts)

    def agent(self, name: str, **overrides: Any) -> Agent:
        """Spawn `name` with the session defaults, overridden per keyword."""
        if self._closed:
            raise ControllerStateError("session has been closed")
        opts = replace(self.defaults, name=name, **overrides)
        agent = Agent._spawn(self.controller, opts, owns_controller=False)
        self._agents[name] = agent
        return agent

    def get(self, name: str) -> Optional[Agent]:
        return self._agents.get(name)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for agent in self._agents.values():
            agent.mark_closed()
        self.controller.shutdown()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def ask(prompt: str, options: Optional[AgentOptions] = None, timeout: float = DEFAULT_ASK_TIMEOUT) -> str:
    """One-shot: spawn an agent, ask once, shut everything down."""
    agent = Agent.create(options)
    try:
        return agent.ask(prompt, timeout=timeout)
    finally:
        agent.close()
