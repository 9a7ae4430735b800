from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, Union

from .errors import GraphIntegrityError, GraphLoadError

logger = logging.getLogger(__name__)

InputType = Literal["choice", "text", "structured", "none"]
INPUT_TYPES = ("choice", "text", "structured", "none")
DEFAULT_ESCALATION_NODE = "ESCALATE"


# -------------------------
# Conditions (closed set)
# -------------------------
@dataclass(frozen=True)
class Always:
    def describe(self) -> str:
        return "always"


@dataclass(frozen=True)
class InputEquals:
    value: str

    def describe(self) -> str:
        return f"equals({self.value!r})"


@dataclass(frozen=True)
class InputMatches:
    pattern: str
    regex: "re.Pattern[str]" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "regex", re.compile(self.pattern, re.IGNORECASE))

    def describe(self) -> str:
        return f"match(/{self.pattern}/i)"


@dataclass(frozen=True)
class MemoryPredicate:
    name: str

    def describe(self) -> str:
        return f"memory({self.name})"


Condition = Union[Always, InputEquals, InputMatches, MemoryPredicate]


@dataclass(frozen=True)
class Transition:
    condition: Condition
    target: str


# -------------------------
# Nodes + graph
# -------------------------
_TOPIC_HINTS: Tuple[Tuple[str, str], ...] = (
    ("escalat", "escalation"),
    ("consent", "consent"),
    ("start", "consent"),
    ("demograph", "demographics"),
    ("blood_pressure", "screening"),
    ("history", "history"),
    ("condition", "history"),
    ("medication", "medications"),
    ("symptom", "symptoms"),
    ("mood", "mood"),
    ("mental", "mood"),
    ("stress", "mood"),
    ("sleep", "lifestyle"),
    ("exercise", "lifestyle"),
    ("diet", "lifestyle"),
    ("screening", "screening"),
    ("preventive", "screening"),
)


def _topic_for(node_id: str) -> str:
    lowered = node_id.lower()
    for hint, topic in _TOPIC_HINTS:
        if hint in lowered:
            return topic
    return "general"


@dataclass(frozen=True)
class Node:
    id: str
    prompt: str
    input_type: InputType
    choices: Tuple[str, ...] = ()
    transitions: Tuple[Transition, ...] = ()
    default: Optional[str] = None
    is_terminal: bool = False
    is_red_flag: bool = False
    help_text: Optional[str] = None
    topic: str = "general"

    def targets(self) -> List[str]:
        out = [t.target for t in self.transitions]
        if self.default is not None:
            out.append(self.default)
        return out


@dataclass(frozen=True)
class GraphMetadata:
    name: str
    version: str
    description: str = ""


@dataclass(frozen=True)
class ConversationGraph:
    """Immutable conversation definition. Node order is document order."""

    metadata: GraphMetadata
    initial_node_id: str
    nodes: Mapping[str, Node]
    escalation_node_id: str = DEFAULT_ESCALATION_NODE

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    @property
    def initial_node(self) -> Node:
        return self.nodes[self.initial_node_id]

    def node_ids(self) -> List[str]:
        return list(self.nodes.keys())

    def position(self, node_id: str) -> int:
        """1-based ordinal of the node in document order (0 if unknown)."""
        ids = self.node_ids()
        return ids.index(node_id) + 1 if node_id in ids else 0

    def unreachable_nodes(self) -> List[str]:
        targeted = {self.initial_node_id, self.escalation_node_id}
        for node in self.nodes.values():
            targeted.update(node.targets())
        return [nid for nid in self.node_ids() if nid not in targeted]


# -------------------------
# Condition grammar
# -------------------------
_EQUALS_RE = re.compile(r"^equals\(\s*input\s*,\s*'(.*)'\s*\)$", re.IGNORECASE | re.DOTALL)
_MATCH_RE = re.compile(r"^match\(\s*input\s*,\s*/(.*)/[a-z]*\s*\)$", re.IGNORECASE | re.DOTALL)
_MEMORY_RE = re.compile(r"^memory\(\s*([A-Za-z_]\w*)\s*\)$", re.IGNORECASE)


def input_text(user_input: Any) -> str:
    """Text form of a user answer; structured answers are compared as sorted JSON."""
    if user_input is None:
        return ""
    if isinstance(user_input, str):
        return user_input
    if isinstance(user_input, (dict, list)):
        return json.dumps(user_input, sort_keys=True)
    return str(user_input)


def parse_condition(expr: str) -> Optional[Condition]:
    """
    Parse one transition trigger. Returns None for the `default` keyword.

      always                        -> Always
      default                       -> None (node default edge)
      equals(input,'v') | equals:v  -> InputEquals
      match(input,/re/i) | match:re -> InputMatches
      memory(name) | memory:name    -> MemoryPredicate
      anything else                 -> InputEquals(literal)
    """
    text = (expr or "").strip()
    lowered = text.lower()
    if not text:
        raise GraphLoadError("Empty transition condition")
    if lowered == "always":
        return Always()
    if lowered == "default":
        return None

    try:
        m = _MATCH_RE.match(text)
        if m:
            return InputMatches(m.group(1))
        if lowered.startswith("match:"):
            return InputMatches(text[len("match:"):].strip())
    except re.error as exc:
        raise GraphLoadError(f"Invalid regex in condition {expr!r}: {exc}") from exc

    m = _EQUALS_RE.match(text)
    if m:
        return InputEquals(m.group(1))
    if lowered.startswith("equals:"):
        return InputEquals(text[len("equals:"):].strip())

    m = _MEMORY_RE.match(text)
    if m:
        return MemoryPredicate(m.group(1))
    if lowered.startswith("memory:"):
        return MemoryPredicate(text[len("memory:"):].strip())

    return InputEquals(text)


def _parse_transitions(node_id: str, raw: Any) -> Tuple[Tuple[Transition, ...], Optional[str]]:
    pairs: List[Tuple[str, Any]] = []
    if raw is None:
        return (), None
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        for idx, item in enumerate(raw):
            if not isinstance(item, dict) or "next" not in item:
                raise GraphLoadError(f"Node '{node_id}': transition #{idx} must be an object with 'next'")
            pairs.append((str(item.get("condition", "always")), item["next"]))
    else:
        raise GraphLoadError(f"Node '{node_id}': 'transitions' must be an object or a list")

    transitions: List[Transition] = []
    default: Optional[str] = None
    for trigger, target in pairs:
        if not isinstance(target, str) or not target:
            raise GraphLoadError(f"Node '{node_id}': transition {trigger!r} has no target node id")
        condition = parse_condition(str(trigger))
        if condition is None:
            default = target
        else:
            transitions.append(Transition(condition=condition, target=target))
    return tuple(transitions), default


def _parse_node(node_id: str, raw: Any) -> Node:
    if not isinstance(raw, dict):
        raise GraphLoadError(f"Node '{node_id}' must be an object")

    prompt = raw.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise GraphLoadError(f"Node '{node_id}' missing 'prompt'")

    input_type = raw.get("inputType")
    if input_type not in INPUT_TYPES:
        raise GraphLoadError(f"Node '{node_id}' has invalid inputType {input_type!r}; expected one of {INPUT_TYPES}")

    choices = raw.get("choices") or []
    if not isinstance(choices, list) or not all(isinstance(c, str) for c in choices):
        raise GraphLoadError(f"Node '{node_id}': 'choices' must be a list of strings")

    transitions, default = _parse_transitions(node_id, raw.get("transitions"))

    return Node(
        id=str(raw.get("id", node_id)),
        prompt=prompt,
        input_type=input_type,
        choices=tuple(choices),
        transitions=transitions,
        default=default,
        is_terminal=bool(raw.get("isTerminal", False)),
        is_red_flag=bool(raw.get("isRedFlag", raw.get("isRedFlagNode", False))),
        help_text=raw.get("helpText"),
        topic=str(raw.get("topic") or _topic_for(node_id)),
    )


def parse_graph(document: Any) -> ConversationGraph:
    """Build a graph from an already-decoded JSON document (no integrity checks)."""
    if not isinstance(document, dict):
        raise GraphLoadError("Graph document must be a JSON object")

    raw_nodes = document.get("nodes")
    if not isinstance(raw_nodes, dict) or not raw_nodes:
        raise GraphLoadError("Graph document has missing or empty 'nodes'")

    initial = document.get("initialState")
    if not isinstance(initial, str) or not initial:
        raise GraphLoadError("Graph document missing 'initialState'")

    meta_raw = document.get("metadata") or {}
    if not isinstance(meta_raw, dict):
        raise GraphLoadError("'metadata' must be an object")
    metadata = GraphMetadata(
        name=str(meta_raw.get("name", "unnamed")),
        version=str(meta_raw.get("version", "0")),
        description=str(meta_raw.get("description", "")),
    )

    nodes: Dict[str, Node] = {}
    for node_id, raw in raw_nodes.items():
        nodes[node_id] = _parse_node(node_id, raw)

    return ConversationGraph(
        metadata=metadata,
        initial_node_id=initial,
        nodes=nodes,
        escalation_node_id=str(document.get("escalationState") or DEFAULT_ESCALATION_NODE),
    )


def validate_graph(graph: ConversationGraph, known_predicates: Optional[Iterable[str]] = None) -> None:
    """
    Collect every structural problem and raise one GraphIntegrityError.
    Unreachable nodes are only logged.
    """
    problems: List[str] = []
    nodes = graph.nodes

    if graph.initial_node_id not in nodes:
        problems.append(f"Initial node '{graph.initial_node_id}' not found in nodes")
    if graph.escalation_node_id not in nodes:
        problems.append(f"Escalation node '{graph.escalation_node_id}' not found in nodes")

    predicate_names = set(known_predicates) if known_predicates is not None else None

    for key, node in nodes.items():
        if node.id != key:
            problems.append(f"Node '{key}' has mismatched id '{node.id}'")
        if node.input_type == "choice" and not node.choices:
            problems.append(f"Node '{key}' is type 'choice' but has no choices")
        for transition in node.transitions:
            if transition.target not in nodes:
                problems.append(
                    f"Node '{key}' has transition {transition.condition.describe()} to unknown node '{transition.target}'"
                )
            if (
                predicate_names is not None
                and isinstance(transition.condition, MemoryPredicate)
                and transition.condition.name not in predicate_names
            ):
                problems.append(f"Node '{key}' uses unknown memory predicate '{transition.condition.name}'")
        if node.default is not None and node.default not in nodes:
            problems.append(f"Node '{key}' has default transition to unknown node '{node.default}'")

    if problems:
        raise GraphIntegrityError(problems)

    unreachable = graph.unreachable_nodes()
    if unreachable:
        logger.warning("Graph '%s' has unreachable nodes: %s", graph.metadata.name, ", ".join(unreachable))


def load_graph(
    source: Union[str, Path, Dict[str, Any]],
    known_predicates: Optional[Iterable[str]] = None,
) -> ConversationGraph:
    """Load + validate a graph from a JSON file path or a decoded document."""
    if isinstance(source, dict):
        document: Any = source
        origin = "<document>"
    else:
        path = Path(source)
        origin = str(path)
        if not path.exists():
            raise GraphLoadError(f"Graph file not found: {path}")
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise GraphLoadError(f"Could not read graph file {path}: {exc}") from exc

    graph = parse_graph(document)
    validate_graph(graph, known_predicates)
    logger.info(
        "Loaded graph '%s' v%s from %s (%d nodes)",
        graph.metadata.name,
        graph.metadata.version,
        origin,
        len(graph.nodes),
    )
    return graph
