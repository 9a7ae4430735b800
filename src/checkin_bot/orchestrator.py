from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, TypedDict

from langgraph.graph import END, START, StateGraph

from . import config
from .conversation_graph import ConversationGraph, Node, load_graph
from .errors import CorruptState, SessionNotFound, UnroutableInput
from .generator import BedrockTextGenerator, TextGenerator
from .memory import InMemorySessionStore, Session, SessionMemory, SessionStore, SqlSessionStore, Step, utcnow
from .profiles import InMemoryProfileStore, ProfileStore
from .prompt_engine import PromptEngine
from .reasoning import ReasoningDelta, ReasoningEngine
from .router import known_predicates, resolve
from .summary import Summary, synthesize

logger = logging.getLogger(__name__)

TurnStatus = Literal["advanced", "unroutable", "completed", "already_completed", "not_found", "inactive"]

UNROUTABLE_MESSAGE = "Sorry, I didn't quite catch that. Could you answer the question again?"


# -------------------------
# Projections
# -------------------------
@dataclass(frozen=True)
class NodeView:
    id: str
    prompt: str
    input_type: str
    is_terminal: bool
    is_red_flag: bool
    help_text: Optional[str] = None
    choices: Optional[List[str]] = None

    @classmethod
    def of(cls, node: Node) -> "NodeView":
        return cls(
            id=node.id,
            prompt=node.prompt,
            input_type=node.input_type,
            is_terminal=node.is_terminal,
            is_red_flag=node.is_red_flag,
            help_text=node.help_text,
            choices=list(node.choices) if node.choices else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "prompt": self.prompt,
            "inputType": self.input_type,
            "isTerminal": self.is_terminal,
            "isRedFlag": self.is_red_flag,
        }
        if self.help_text:
            out["helpText"] = self.help_text
        if self.choices:
            out["choices"] = list(self.choices)
        return out


@dataclass(frozen=True)
class Progress:
    current: int
    total: int
    percentage: int

    @classmethod
    def of(cls, graph: ConversationGraph, node_id: str) -> "Progress":
        total = len(graph.nodes)
        current = graph.position(node_id)
        percentage = round(current / total * 100) if total else 0
        return cls(current=current, total=total, percentage=percentage)

    def to_dict(self) -> Dict[str, int]:
        return {"current": self.current, "total": self.total, "percentage": self.percentage}


@dataclass(frozen=True)
class SessionView:
    session_id: str
    user_id: str
    status: str
    node: NodeView
    progress: Progress
    step_count: int = 0
    summary: Optional[Summary] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "status": self.status,
            "node": self.node.to_dict(),
            "progress": self.progress.to_dict(),
            "stepCount": self.step_count,
        }
        if self.summary is not None:
            out["summary"] = self.summary.to_dict()
        return out


@dataclass(frozen=True)
class TurnOutcome:
    status: TurnStatus
    session_id: str
    node: Optional[NodeView] = None
    generated_response: Optional[str] = None
    progress: Optional[Progress] = None
    summary: Optional[Summary] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("advanced", "completed", "already_completed")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status, "sessionId": self.session_id}
        if self.node is not None:
            out["node"] = self.node.to_dict()
        if self.generated_response is not None:
            out["generatedResponse"] = self.generated_response
        if self.progress is not None:
            out["progress"] = self.progress.to_dict()
        if self.summary is not None:
            out["summary"] = self.summary.to_dict()
        if self.error:
            out["error"] = self.error
        return out


# -------------------------
# Turn pipeline state
# -------------------------
class TurnState(TypedDict, total=False):
    session_id: str
    node_id: str
    user_input: Any
    delta: ReasoningDelta
    response: str
    next_node_id: str
    unroutable: bool
    summary: Dict[str, Any]


class _SessionLock:
    """threading.Lock cannot be weakly referenced; this thin wrapper can."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_SessionLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self._lock.release()


# -------------------------
# Orchestrator
# -------------------------
class Orchestrator:
    """
    Drives sessions through the conversation graph.

    Each handle_input call runs one pass of a small LangGraph pipeline:

        reason -> generate -> record -> route -> (summarize | END)

    The session store is the only place state lives between calls, so the
    pipeline is compiled without a checkpointer.
    """

    def __init__(
        self,
        graph: Optional[ConversationGraph] = None,
        generator: Optional[TextGenerator] = None,
        memory: Optional[SessionMemory] = None,
        engine: Optional[ReasoningEngine] = None,
        profiles: Optional[ProfileStore] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.graph = graph or load_graph(config.GRAPH_PATH, known_predicates())
        self.memory = memory or SessionMemory()
        self.engine = engine or ReasoningEngine()
        self.profiles = profiles or InMemoryProfileStore()
        self.prompt_engine = PromptEngine(generator or BedrockTextGenerator(), timeout_seconds)

        # entries drop out once no in-flight call references them
        self._locks: "weakref.WeakValueDictionary[str, _SessionLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._pipeline = self._build_pipeline()

    @classmethod
    def from_config(cls, generator: Optional[TextGenerator] = None) -> "Orchestrator":
        store: SessionStore = SqlSessionStore(config.DATABASE_URL) if config.DATABASE_URL else InMemorySessionStore()
        return cls(generator=generator, memory=SessionMemory(store))

    # ---------- locking ----------

    def _lock_for(self, session_id: str) -> "_SessionLock":
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = _SessionLock()
                self._locks[session_id] = lock
            return lock

    # ---------- pipeline nodes ----------

    def _node(self, node_id: str) -> Node:
        node = self.graph.get_node(node_id)
        if node is None:
            raise KeyError(node_id)
        return node

    def _reason(self, state: TurnState) -> Dict[str, Any]:
        session = self.memory.get(state["session_id"])
        node = self._node(state["node_id"])
        profile = self.profiles.load(session.user_id)
        delta = self.engine.analyze(node, state["user_input"], session.reasoning, profile)
        self.memory.merge_reasoning(session.session_id, delta)
        return {"delta": delta}

    def _generate(self, state: TurnState) -> Dict[str, Any]:
        session = self.memory.get(state["session_id"])
        node = self._node(state["node_id"])
        history = [s.to_dict() for s in session.steps]
        response = self.prompt_engine.respond(node, state["user_input"], state["delta"], history)
        return {"response": response}

    def _record(self, state: TurnState) -> Dict[str, Any]:
        step = Step(
            node_id=state["node_id"],
            timestamp=utcnow(),
            input=state["user_input"],
            generated_response=state["response"],
            reasoning_snapshot=state["delta"].to_dict(),
        )
        self.memory.append_step(state["session_id"], step)
        return {}

    def _route(self, state: TurnState) -> Dict[str, Any]:
        session = self.memory.get(state["session_id"])
        node = self._node(state["node_id"])
        try:
            next_id = resolve(
                self.graph,
                node,
                state["user_input"],
                session,
                escalate=state["delta"].requires_escalation,
            )
        except UnroutableInput as exc:
            logger.debug("Session %s: %s", session.session_id, exc)
            return {"unroutable": True}
        self.memory.update_current_node(session.session_id, next_id)
        return {"next_node_id": next_id, "unroutable": False}

    def _after_route(self, state: TurnState) -> str:
        if state.get("unroutable"):
            return "end"
        if self._node(state["next_node_id"]).is_terminal:
            return "summarize"
        return "end"

    def _summarize(self, state: TurnState) -> Dict[str, Any]:
        session = self.memory.get(state["session_id"])
        summary = synthesize(session.steps, session.reasoning, self.prompt_engine)
        self.memory.complete(session.session_id, summary.to_dict())
        logger.info("Session %s completed at %s (%s summary)", session.session_id, state["next_node_id"], summary.source)
        return {"summary": summary.to_dict()}

    def _build_pipeline(self):
        builder = StateGraph(TurnState)
        builder.add_node("reason", self._reason)
        builder.add_node("generate", self._generate)
        builder.add_node("record", self._record)
        builder.add_node("route", self._route)
        builder.add_node("summarize", self._summarize)

        builder.add_edge(START, "reason")
        builder.add_edge("reason", "generate")
        builder.add_edge("generate", "record")
        builder.add_edge("record", "route")
        builder.add_conditional_edges("route", self._after_route, {"summarize": "summarize", "end": END})
        builder.add_edge("summarize", END)
        return builder.compile()

    # ---------- helpers ----------

    def _current_node(self, session: Session) -> Node:
        node = self.graph.get_node(session.current_node_id)
        if node is None:
            logger.error("Session %s points at unknown node '%s'", session.session_id, session.current_node_id)
            raise CorruptState(session.session_id, session.current_node_id)
        return node

    def _view(self, session: Session) -> SessionView:
        node = self._current_node(session)
        return SessionView(
            session_id=session.session_id,
            user_id=session.user_id,
            status=session.status,
            node=NodeView.of(node),
            progress=Progress.of(self.graph, node.id),
            step_count=len(session.steps),
            summary=Summary.from_dict(session.summary) if session.summary else None,
        )

    # ---------- public API ----------

    def start_session(self, user_id: str) -> SessionView:
        session = self.memory.create(user_id, self.graph.initial_node_id)
        logger.info("Started session %s for user %s", session.session_id, user_id)
        return self._view(session)

    def handle_input(self, session_id: str, user_input: Any) -> TurnOutcome:
        with self._lock_for(session_id):
            try:
                session = self.memory.get(session_id)
            except SessionNotFound as exc:
                return TurnOutcome(status="not_found", session_id=session_id, error=str(exc))

            node = self._current_node(session)
            node_view = NodeView.of(node)
            progress = Progress.of(self.graph, node.id)

            if session.status == "completed":
                return TurnOutcome(
                    status="already_completed",
                    session_id=session_id,
                    node=node_view,
                    progress=progress,
                    summary=Summary.from_dict(session.summary) if session.summary else None,
                )
            if not session.is_active:
                return TurnOutcome(
                    status="inactive",
                    session_id=session_id,
                    node=node_view,
                    progress=progress,
                    error=f"Session is {session.status}",
                )

            final: TurnState = self._pipeline.invoke(
                {"session_id": session_id, "node_id": node.id, "user_input": user_input}
            )

            if final.get("unroutable"):
                return TurnOutcome(
                    status="unroutable",
                    session_id=session_id,
                    node=node_view,
                    generated_response=final.get("response"),
                    progress=progress,
                    error=UNROUTABLE_MESSAGE,
                )

            next_node = self._node(final["next_node_id"])
            summary_doc = final.get("summary")
            return TurnOutcome(
                status="completed" if summary_doc else "advanced",
                session_id=session_id,
                node=NodeView.of(next_node),
                generated_response=final.get("response"),
                progress=Progress.of(self.graph, next_node.id),
                summary=Summary.from_dict(summary_doc) if summary_doc else None,
            )

    def get_session(self, session_id: str) -> Optional[SessionView]:
        try:
            session = self.memory.get(session_id)
        except SessionNotFound:
            return None
        return self._view(session)

    def abandon_session(self, session_id: str) -> Optional[SessionView]:
        with self._lock_for(session_id):
            try:
                session = self.memory.abandon(session_id)
            except SessionNotFound:
                return None
            logger.info("Session %s is now %s", session_id, session.status)
            return self._view(session)

    def list_sessions(self, user_id: str, limit: int = 20) -> List[SessionView]:
        return [self._view(s) for s in self.memory.list_for_user(user_id, limit)]

    def close(self) -> None:
        self.prompt_engine.close()
