"""
Reasoning side-channel.

Every turn the engine looks at (node, answer, accumulated memory, profile)
and emits a ReasoningDelta: red flags, scores, recommendations, screenings
and structured facts. Deltas are purely additive; the session's
ReasoningAccumulator merges them and never drops anything it already holds.

Rules are looked up in a registration table keyed by node id, plus a list of
global rules that run on every node. Adding a node rule never requires
touching the engine itself:

    engine = ReasoningEngine()

    @engine.register("WATER_INTAKE")
    def water(ctx, out):
        ...
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple

from . import calculators as calc
from .conversation_graph import Node, input_text
from .profiles import Profile
from .safety import escalation_hits

logger = logging.getLogger(__name__)

Severity = Literal["high", "moderate", "low"]
SEVERITIES = ("high", "moderate", "low")

NONE_SENTINELS = frozenset(
    {
        "none of the above",
        "none",
        "no",
        "n/a",
        "not applicable",
        "nothing",
        "no conditions",
        "no medical conditions",
        "no medications",
        "none that i know of",
    }
)
# list items that deny rather than name something ("no allergies", "not any")
_NEGATED_ITEM_RE = re.compile(r"^(?:no|none|nothing|not any|i don't (?:have|take) any|i do not (?:have|take) any)\b")
_SMOKING_RE = re.compile(r"smok|cigarette|tobacco|vap(?:e|ing)")
MOOD_FOLLOW_UP = "consider mental health follow-up"

# facts whose values are lists and merge as ordered unions
LIST_FACTS = frozenset({"conditions", "medications", "risk_factors", "symptoms"})


# -------------------------
# Delta + accumulator
# -------------------------
@dataclass(frozen=True)
class RedFlag:
    id: str
    label: str
    reason: str
    severity: Severity = "moderate"

    def key(self) -> Tuple[str, str]:
        return (self.id, self.reason)

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "label": self.label, "reason": self.reason, "severity": self.severity}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RedFlag":
        severity = data.get("severity", "moderate")
        if severity not in SEVERITIES:
            severity = "moderate"
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", data["id"])),
            reason=str(data.get("reason", "")),
            severity=severity,
        )


def _add_unique(items: List[str], value: str) -> None:
    if value and value not in items:
        items.append(value)


@dataclass
class ReasoningDelta:
    red_flags: List[RedFlag] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    screenings: List[str] = field(default_factory=list)
    facts: Dict[str, Any] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    @property
    def requires_escalation(self) -> bool:
        return any(flag.severity == "high" for flag in self.red_flags)

    def add_flag(self, id: str, label: str, reason: str, severity: Severity = "moderate") -> None:
        flag = RedFlag(id=id, label=label, reason=reason, severity=severity)
        if all(f.key() != flag.key() for f in self.red_flags):
            self.red_flags.append(flag)

    def add_recommendation(self, text: str) -> None:
        _add_unique(self.recommendations, text)

    def add_screening(self, label: str) -> None:
        _add_unique(self.screenings, label)

    def add_note(self, text: str) -> None:
        _add_unique(self.notes, text)

    def set_score(self, name: str, value: float) -> None:
        self.scores[name] = value

    def set_fact(self, name: str, value: Any) -> None:
        if name in LIST_FACTS:
            current = list(self.facts.get(name, []))
            for item in value or []:
                _add_unique(current, item)
            self.facts[name] = current
        else:
            self.facts[name] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "red_flags": [f.to_dict() for f in self.red_flags],
            "scores": dict(self.scores),
            "recommendations": list(self.recommendations),
            "screenings": list(self.screenings),
            "facts": dict(self.facts),
            "notes": list(self.notes),
        }


@dataclass
class ReasoningAccumulator:
    """Session-owned, grow-only reasoning state."""

    red_flags: List[RedFlag] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    screenings: List[str] = field(default_factory=list)
    facts: Dict[str, Any] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    def merge(self, delta: ReasoningDelta) -> None:
        known = {f.key() for f in self.red_flags}
        for flag in delta.red_flags:
            if flag.key() not in known:
                self.red_flags.append(flag)
                known.add(flag.key())
        self.scores.update(delta.scores)
        for rec in delta.recommendations:
            _add_unique(self.recommendations, rec)
        for label in delta.screenings:
            _add_unique(self.screenings, label)
        for name, value in delta.facts.items():
            if name in LIST_FACTS:
                current = list(self.facts.get(name, []))
                for item in value or []:
                    _add_unique(current, item)
                self.facts[name] = current
            else:
                self.facts[name] = value
        for note in delta.notes:
            _add_unique(self.notes, note)

    def has_red_flags(self) -> bool:
        return bool(self.red_flags)

    def has_high_severity(self) -> bool:
        return any(f.severity == "high" for f in self.red_flags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "red_flags": [f.to_dict() for f in self.red_flags],
            "scores": dict(self.scores),
            "recommendations": list(self.recommendations),
            "screenings": list(self.screenings),
            "facts": dict(self.facts),
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ReasoningAccumulator":
        data = data or {}
        return cls(
            red_flags=[RedFlag.from_dict(f) for f in data.get("red_flags", [])],
            scores=dict(data.get("scores", {})),
            recommendations=list(data.get("recommendations", [])),
            screenings=list(data.get("screenings", [])),
            facts=dict(data.get("facts", {})),
            notes=list(data.get("notes", [])),
        )


# -------------------------
# Rule context
# -------------------------
@dataclass(frozen=True)
class RuleContext:
    node: Node
    user_input: Any
    text: str
    memory: ReasoningAccumulator
    profile: Optional[Profile] = None
    pending: Mapping[str, Any] = field(default_factory=dict)

    @property
    def lowered(self) -> str:
        return self.text.strip().lower()

    def is_none_answer(self) -> bool:
        return self.lowered in NONE_SENTINELS

    def fact(self, name: str, default: Any = None) -> Any:
        """Current-turn facts win, then accumulated facts, then the profile."""
        if name in self.pending:
            return self.pending[name]
        if name in self.memory.facts:
            return self.memory.facts[name]
        if self.profile is not None:
            return self.profile.facts().get(name, default)
        return default


Rule = Callable[[RuleContext, ReasoningDelta], None]


# -------------------------
# Global rules
# -------------------------
def red_flag_node_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if not ctx.node.is_red_flag or not ctx.lowered or ctx.is_none_answer():
        return
    severity: Severity = "high" if escalation_hits(ctx.text) else "moderate"
    out.add_flag(
        id=f"node:{ctx.node.id}",
        label=f"Red-flag answer at {ctx.node.id}",
        reason=ctx.text.strip(),
        severity=severity,
    )
    out.set_fact("symptoms", [ctx.text.strip()])


def escalation_phrase_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    for rule in escalation_hits(ctx.text):
        out.add_flag(id=rule.id, label=rule.label, reason=ctx.text.strip(), severity="high")


def clinical_detector_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    cardio = calc.detect_cardio_red_flag(ctx.text)
    if cardio:
        out.add_flag("cardio_critical", "Cardiovascular red flag", cardio, "high")
    resp = calc.detect_respiratory_red_flag(ctx.text)
    if resp:
        out.add_flag("resp_critical", "Respiratory red flag", resp, "high")
    mental = calc.detect_mental_health_red_flag(ctx.text)
    if mental:
        out.add_flag("mental_health_critical", "Mental health concern", mental, "high")


def chest_pain_score_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if not re.search(r"chest|palpitation", ctx.lowered):
        return
    risk = calc.chest_pain_risk(
        ctx.text,
        age=ctx.fact("age"),
        sex=ctx.fact("sex"),
        conditions=ctx.fact("conditions") or [],
        smoker=bool(ctx.fact("smoker")),
    )
    out.set_score("chest_pain_risk", risk)
    if risk >= 8:
        out.add_flag("cardio_high_risk", "High cardiac risk pattern", "Chest symptoms with elevated risk factors", "high")
    elif risk >= 5:
        out.add_flag("cardio_moderate_risk", "Moderate cardiac risk", "Chest symptoms requiring evaluation", "moderate")
        out.add_recommendation("learn the warning signs of a heart attack")


def respiratory_score_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if not re.search(r"cough|breath|wheez", ctx.lowered):
        return
    severity = calc.respiratory_severity(ctx.text)
    out.set_score("respiratory_severity", severity)
    if severity >= 8:
        out.add_flag("resp_severe", "Severe respiratory symptoms", "High severity respiratory distress", "high")
    elif severity >= 5:
        out.add_flag("resp_moderate", "Moderate respiratory symptoms", "Respiratory symptoms requiring attention", "moderate")
        out.add_recommendation("see a clinician about your breathing symptoms")


GLOBAL_RULES: Tuple[Rule, ...] = (
    red_flag_node_rule,
    escalation_phrase_rule,
    clinical_detector_rule,
    chest_pain_score_rule,
    respiratory_score_rule,
)


# -------------------------
# Node rules
# -------------------------
def _split_list_answer(ctx: RuleContext) -> List[str]:
    if isinstance(ctx.user_input, list):
        items = [str(i) for i in ctx.user_input]
    else:
        items = re.split(r",|;|\band\b|\n", ctx.text)
    out: List[str] = []
    for item in items:
        cleaned = item.strip().strip(".").lower()
        if not cleaned or cleaned in NONE_SENTINELS or _NEGATED_ITEM_RE.match(cleaned):
            continue
        _add_unique(out, cleaned)
    return out


def _screening_pass(ctx: RuleContext, out: ReasoningDelta) -> None:
    age = ctx.fact("age")
    if age is None:
        return
    risk_factors = list(ctx.fact("risk_factors") or [])
    bmi_cat = ctx.fact("bmi_category") or ""
    if bmi_cat.startswith("obese"):
        risk_factors.append("obese")
    elif bmi_cat == "overweight":
        risk_factors.append("overweight")
    for label in calc.recommend_screenings(int(age), ctx.fact("sex"), risk_factors):
        out.add_screening(label)


_STRUCTURED_DEMOGRAPHICS = (
    ("age", ("age",)),
    ("weight_kg", ("weight_kg", "weight")),
    ("height_m", ("height_m", "height")),
)


def _measurement(key: str, value: Any) -> Optional[float]:
    """Number from a structured field: 70, "70", "70kg", "154 lbs", "1.65m", "165cm"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        try:
            number = float(text)
        except ValueError:
            found = calc.parse_demographics(text).get(key)
            if found is None:
                return None
            number = float(found)
    if key == "height_m" and number > 3:
        # bare centimetres
        number = number / 100.0
    return number


def _structured_demographics(raw: Mapping[str, Any], out: ReasoningDelta) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for key, aliases in _STRUCTURED_DEMOGRAPHICS:
        value = next((raw[a] for a in aliases if raw.get(a) not in (None, "")), None)
        if value is None:
            continue
        number = _measurement(key, value)
        if key == "age" and number is not None and not 0 < number < 120:
            number = None
        if number is None:
            out.add_note(f"Could not read {key.split('_')[0]} from {value!r}")
            continue
        parsed[key] = int(number) if key == "age" else number
    if raw.get("sex"):
        sex = calc.normalize_sex(str(raw["sex"]))
        if sex != "unknown":
            parsed["sex"] = sex
    return parsed


def demographics_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if isinstance(ctx.user_input, dict):
        parsed = _structured_demographics(ctx.user_input, out)
    else:
        parsed = calc.parse_demographics(ctx.text)

    for key, value in parsed.items():
        out.set_fact(key, value)

    ctx = RuleContext(ctx.node, ctx.user_input, ctx.text, ctx.memory, ctx.profile, out.facts)
    weight = ctx.fact("weight_kg")
    height = ctx.fact("height_m")
    if weight and height:
        bmi = round(calc.compute_bmi(float(weight), float(height)), 1)
        category = calc.bmi_category(bmi)
        out.set_score("bmi", bmi)
        out.set_fact("bmi_category", category)
        out.add_note(f"BMI ~ {bmi} ({category})")
        if bmi >= 30:
            out.add_flag("bmi_obese", "Obesity", f"BMI {bmi} indicates obesity", "moderate")
            out.add_recommendation("discuss weight management with your doctor")
        elif bmi >= 25:
            out.add_recommendation("healthy lifestyle and nutrition")
        elif bmi < 18.5:
            out.add_flag("bmi_underweight", "Underweight", f"BMI {bmi} indicates underweight", "low")
            out.add_recommendation("nutrition and healthy weight")

    _screening_pass(ctx, out)


def blood_pressure_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    reading = calc.parse_blood_pressure(ctx.text)
    if reading is None:
        if re.search(r"don't know|not sure|unknown|never", ctx.lowered):
            out.add_recommendation("get your blood pressure checked")
        return
    systolic, diastolic = reading
    category = calc.blood_pressure_category(systolic, diastolic)
    out.set_score("systolic", systolic)
    out.set_score("diastolic", diastolic)
    out.set_fact("bp_category", category)
    out.add_note(f"Blood pressure {systolic}/{diastolic} ({category})")
    if category == "hypertensive_crisis":
        out.add_flag("bp_crisis", "Hypertensive crisis", f"Reported blood pressure {systolic}/{diastolic}", "high")
    elif category == "stage_2":
        out.add_flag("bp_stage_2", "High blood pressure", f"Reported blood pressure {systolic}/{diastolic}", "moderate")
        out.add_recommendation("follow up with a clinician about high blood pressure")
    elif category in ("stage_1", "elevated"):
        out.add_recommendation("recheck your blood pressure within a few months")


def medical_history_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    # smoking is a risk factor, not a condition
    conditions = [c for c in _split_list_answer(ctx) if not _SMOKING_RE.search(c)]
    if conditions:
        out.set_fact("conditions", conditions)
    lowered = ctx.lowered
    if re.search(r"former smoker|quit smoking|used to smoke|ex-smoker", lowered):
        out.set_fact("smoker", False)
        out.set_fact("risk_factors", ["former_smoker"])
    elif re.search(r"non-?smoker|never smoked|don't smoke", lowered):
        out.set_fact("smoker", False)
    elif re.search(r"smok", lowered):
        out.set_fact("smoker", True)
        out.set_fact("risk_factors", ["smoker"])
        out.add_recommendation("talk to your doctor about quitting smoking")
    if re.search(r"diabet", lowered):
        out.add_recommendation("keep up regular diabetes monitoring")


def conditions_followup_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if ctx.lowered:
        out.add_note(f"Condition management: {ctx.text.strip()}")
    if re.search(r"not (?:well|good)|poorly|uncontrolled|worse", ctx.lowered):
        out.add_recommendation("review your condition management plan with your doctor")


def medications_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    meds = _split_list_answer(ctx)
    if meds:
        out.set_fact("medications", meds)
        if len(meds) >= 5:
            out.add_recommendation("ask your pharmacist for a medication review")


def symptom_severity_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    score = calc.symptom_severity_score(ctx.text)
    if score is None:
        return
    out.set_score("symptom_severity", score)
    if score >= 8:
        out.add_flag("symptom_severe", "Severe symptoms", f"Symptom severity rated {score}/10", "moderate")
        out.add_recommendation("see a clinician about your symptoms soon")
    elif score >= 5:
        out.add_recommendation("monitor your symptoms and book a visit if they persist")


def sleep_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    m = re.search(r"(\d{1,2}(?:\.\d)?)\s*(?:h|hours?)", ctx.lowered)
    if m:
        hours = float(m.group(1))
        out.set_score("sleep_hours", hours)
        if hours < 6:
            out.add_recommendation("discuss sleep problems with your doctor")
    if re.search(r"\bpoor\b|\bbad\b|insomnia|can't sleep", ctx.lowered):
        out.set_fact("sleep_quality", "poor")
        out.add_recommendation("discuss sleep problems with your doctor")
    elif ctx.lowered:
        out.set_fact("sleep_quality", ctx.lowered)


_STRESS_LEVELS = (("very high", 4), ("high", 3), ("moderate", 2), ("low", 1))


def stress_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    for label, level in _STRESS_LEVELS:
        if label in ctx.lowered:
            out.set_score("stress_level", level)
            if level >= 3:
                out.add_recommendation("consider stress management support")
            return


def _mood_rule(item: str) -> Rule:
    def rule(ctx: RuleContext, out: ReasoningDelta) -> None:
        weight = calc.mood_answer_weight(ctx.text)
        if weight is None:
            return
        out.set_fact(f"mood_{item}", ctx.lowered)
        answers = [
            a
            for a in (
                out.facts.get("mood_interest", ctx.fact("mood_interest")),
                out.facts.get("mood_down", ctx.fact("mood_down")),
            )
            if a
        ]
        score = calc.mood_screen_score(answers)
        out.set_score("mood_screen", score)
        if score >= calc.MOOD_SCREEN_THRESHOLD:
            out.add_recommendation(MOOD_FOLLOW_UP)
            out.add_flag(
                "depression_screen_positive",
                "Positive depression screen",
                f"Mood screen score {score}/6 suggests further evaluation",
                "moderate",
            )

    rule.__name__ = f"mood_{item}_rule"
    return rule


def mood_followup_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if ctx.lowered and not ctx.is_none_answer():
        out.add_note(f"Mood follow-up: {ctx.text.strip()}")


def exercise_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    m = re.search(r"(\d{1,4})\s*(?:min|minutes)", ctx.lowered)
    if m:
        minutes = int(m.group(1))
        out.set_score("exercise_minutes", minutes)
        if minutes < 150:
            out.add_recommendation("aim for 150 minutes of moderate activity per week")
        return
    if re.search(r"\b0 days|never|rarely|none|sedentary|1-2 days", ctx.lowered):
        out.add_recommendation("aim for 150 minutes of moderate activity per week")


def diet_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if re.search(r"\bpoor\b|fast food|junk|unhealthy", ctx.lowered):
        out.set_fact("diet_quality", "poor")
        out.add_recommendation("add more fruit, vegetables and whole grains")
    elif ctx.lowered:
        out.set_fact("diet_quality", ctx.lowered)


def screening_history_rule(ctx: RuleContext, out: ReasoningDelta) -> None:
    if ctx.lowered:
        out.set_fact("screening_history", ctx.text.strip())
    if re.search(r"never|not sure|don't know|none", ctx.lowered):
        out.add_recommendation("ask your doctor which screenings are due")
    _screening_pass(ctx, out)


BUILTIN_NODE_RULES: Dict[str, Tuple[Rule, ...]] = {
    "DEMOGRAPHICS": (demographics_rule,),
    "BLOOD_PRESSURE": (blood_pressure_rule,),
    "MEDICAL_HISTORY": (medical_history_rule,),
    "CONDITIONS_FOLLOWUP": (conditions_followup_rule,),
    "MEDICATIONS": (medications_rule,),
    "SYMPTOM_SEVERITY": (symptom_severity_rule,),
    "SLEEP_QUALITY": (sleep_rule,),
    "STRESS_LEVEL": (stress_rule,),
    "MOOD_INTEREST": (_mood_rule("interest"),),
    "MOOD_DOWN": (_mood_rule("down"),),
    "MOOD_FOLLOWUP": (mood_followup_rule,),
    "EXERCISE": (exercise_rule,),
    "DIET": (diet_rule,),
    "SCREENING_HISTORY": (screening_history_rule,),
}


# -------------------------
# Engine
# -------------------------
class ReasoningEngine:
    def __init__(self, builtin: bool = True) -> None:
        self._node_rules: Dict[str, List[Rule]] = {}
        self._global_rules: List[Rule] = []
        if builtin:
            self._global_rules.extend(GLOBAL_RULES)
            for node_id, rules in BUILTIN_NODE_RULES.items():
                self._node_rules[node_id] = list(rules)

    def register(self, node_id: str) -> Callable[[Rule], Rule]:
        def decorator(rule: Rule) -> Rule:
            self._node_rules.setdefault(node_id, []).append(rule)
            return rule

        return decorator

    def rules_for(self, node_id: str) -> List[Rule]:
        return list(self._global_rules) + list(self._node_rules.get(node_id, []))

    def analyze(
        self,
        node: Node,
        user_input: Any,
        memory: ReasoningAccumulator,
        profile: Optional[Profile] = None,
    ) -> ReasoningDelta:
        out = ReasoningDelta()
        text = input_text(user_input)
        for rule in self.rules_for(node.id):
            ctx = RuleContext(
                node=node,
                user_input=user_input,
                text=text,
                memory=memory,
                profile=profile,
                pending=dict(out.facts),
            )
            try:
                rule(ctx, out)
            except Exception:
                # a failing rule is skipped, the remaining rules still run
                logger.exception("Reasoning rule %s failed at node %s", getattr(rule, "__name__", rule), node.id)
        if out.red_flags:
            logger.info(
                "Node %s produced red flags: %s",
                node.id,
                ", ".join(f"{f.id}({f.severity})" for f in out.red_flags),
            )
        return out
