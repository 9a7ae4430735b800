"""
Pure risk / screening helpers used by the reasoning rules.

Nothing in here touches session state; every function maps plain
values to plain values so the rules stay easy to test.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


# ---------- Body-mass index ----------

def compute_bmi(weight_kg: float, height_m: float) -> float:
    if height_m <= 0:
        return 0.0
    return weight_kg / (height_m * height_m)


def bmi_category(bmi: float) -> str:
    if bmi < 18.5:
        return "underweight"
    if bmi < 25:
        return "normal"
    if bmi < 30:
        return "overweight"
    if bmi < 35:
        return "obese_class_1"
    if bmi < 40:
        return "obese_class_2"
    return "obese_class_3"


# ---------- Blood pressure ----------

_BP_RE = re.compile(r"(\d{2,3})\s*(?:/|over)\s*(\d{2,3})", re.IGNORECASE)


def parse_blood_pressure(text: str) -> Optional[Tuple[int, int]]:
    m = _BP_RE.search(text or "")
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def blood_pressure_category(systolic: int, diastolic: int) -> str:
    """ACC/AHA 2017 adult categories."""
    if systolic > 180 or diastolic > 120:
        return "hypertensive_crisis"
    if systolic >= 140 or diastolic >= 90:
        return "stage_2"
    if systolic >= 130 or diastolic >= 80:
        return "stage_1"
    if systolic >= 120:
        return "elevated"
    return "normal"


# ---------- Chest pain / respiratory keyword scores ----------

_CHEST_PAIN_FEATURES: Tuple[Tuple[str, int], ...] = (
    (r"central|substernal|behind.*sternum", 2),
    (r"radiat|spread|arm|jaw|neck|back", 2),
    (r"sweat|diaphores", 1),
    (r"nausea|vomit", 1),
    (r"short.*breath|dyspnea|breathless", 1),
    (r"dizz|lightheaded|faint", 1),
    (r"crushing|pressure|tight|squeez|heavy|elephant", 2),
    (r"sudden|abrupt|came on fast", 1),
    (r"ongoing|continuous|won't go away|persist", 1),
    (r"exertion|exercise|walking|stairs|activity", 1),
)

_CARDIAC_CONDITIONS: Tuple[Tuple[str, int], ...] = (
    (r"diabetes", 1),
    (r"hypertension|high.*blood.*pressure", 1),
    (r"cholesterol|hyperlipidemia", 1),
    (r"heart|cardiac|coronary", 2),
)


def chest_pain_risk(
    text: str,
    age: Optional[int] = None,
    sex: Optional[str] = None,
    conditions: Iterable[str] = (),
    smoker: bool = False,
) -> int:
    """0-10 keyword score for chest symptoms plus baseline risk factors."""
    t = (text or "").lower()
    score = sum(weight for pattern, weight in _CHEST_PAIN_FEATURES if re.search(pattern, t))

    if age is not None and age > 45:
        score += 1
    if age is not None and age > 65:
        score += 1
    if normalize_sex(sex) == "male":
        score += 1

    joined = " ".join(c.lower() for c in conditions)
    score += sum(weight for pattern, weight in _CARDIAC_CONDITIONS if re.search(pattern, joined))
    if smoker:
        score += 1
    return min(score, 10)


_RESPIRATORY_FEATURES: Tuple[Tuple[str, int], ...] = (
    (r"can't.*breathe|cannot.*breathe|unable.*breathe|gasping", 3),
    (r"severe.*short.*breath|extremely.*difficult", 2),
    (r"short.*breath|difficulty.*breath|breathless", 1),
    (r"at rest|sitting|lying|not moving", 2),
    (r"blue|cyanosis", 3),
    (r"chest.*pain|chest.*tight", 1),
    (r"wheez", 1),
    (r"cough.*blood|hemoptysis", 2),
    (r"fever", 1),
    (r"confus|altered|drowsy|can't.*stay.*awake", 2),
    (r"sudden|abrupt|came.*on.*fast", 1),
    (r"getting.*worse|worsening|progressing", 1),
    (r"asthma.*attack|asthma.*flare", 1),
    (r"copd.*exacerbation", 1),
)


def respiratory_severity(text: str) -> int:
    t = (text or "").lower()
    return min(sum(weight for pattern, weight in _RESPIRATORY_FEATURES if re.search(pattern, t)), 10)


# ---------- Mood screen (2 items) ----------

MOOD_ANSWER_WEIGHTS: Dict[str, int] = {
    "not at all": 0,
    "several days": 1,
    "more than half the days": 2,
    "nearly every day": 3,
}
MOOD_SCREEN_THRESHOLD = 3


def mood_answer_weight(answer: str) -> Optional[int]:
    normalized = (answer or "").strip().lower()
    if normalized in MOOD_ANSWER_WEIGHTS:
        return MOOD_ANSWER_WEIGHTS[normalized]
    if "more than half" in normalized:
        return 2
    for phrase, weight in MOOD_ANSWER_WEIGHTS.items():
        if phrase in normalized:
            return weight
    return None


def mood_screen_score(answers: Sequence[str]) -> int:
    return sum(mood_answer_weight(a) or 0 for a in answers)


# ---------- Symptom severity buckets ----------

SEVERITY_BUCKETS: Tuple[Tuple[str, int], ...] = (
    (r"9\s*-\s*10|unbearable|worst", 10),
    (r"7\s*-\s*8|severe", 8),
    (r"4\s*-\s*6|moderate", 5),
    (r"1\s*-\s*3|mild", 2),
    (r"\bnone\b|\b0\b|no symptoms", 0),
)


def symptom_severity_score(text: str) -> Optional[int]:
    t = (text or "").lower()
    for pattern, score in SEVERITY_BUCKETS:
        if re.search(pattern, t):
            return score
    m = re.search(r"\b(10|[0-9])\b", t)
    if m:
        return int(m.group(1))
    return None


# ---------- Red-flag detectors ----------

def detect_cardio_red_flag(text: str) -> Optional[str]:
    t = (text or "").lower()
    if re.search(r"crushing.*chest|elephant.*chest|severe.*chest.*pain", t):
        if re.search(r"radiat|spread|arm|jaw|neck", t) or re.search(r"sweat|nausea|breath", t):
            return "Possible acute coronary syndrome - crushing chest pain with radiation or associated symptoms"
    if re.search(r"sudden.*severe.*chest", t):
        return "Sudden severe chest pain - needs urgent evaluation"
    if re.search(r"faint|pass.*out|lost.*conscious", t) and "chest" in t:
        return "Syncope with chest pain - possible cardiac emergency"
    if re.search(r"palpitation|racing.*heart|heart.*racing", t):
        if re.search(r"faint|dizz|chest.*pain|short.*breath", t):
            return "Palpitations with hemodynamic symptoms"
    if re.search(r"chest\s+(pain|pressure|tightness)|pressure in my chest", t):
        return "Chest pain or pressure reported"
    return None


def detect_respiratory_red_flag(text: str) -> Optional[str]:
    t = (text or "").lower()
    if re.search(r"can't.*breathe|cannot.*breathe|unable.*breathe|gasping|struggling to breathe", t):
        return "Severe respiratory distress"
    if re.search(r"blue.*lips|blue.*fingernails|turning.*blue", t):
        return "Possible cyanosis - oxygen deprivation"
    if re.search(r"cough.*blood|blood.*cough|hemoptysis", t):
        return "Hemoptysis - coughing blood"
    if re.search(r"confus|drowsy|can't.*stay.*awake", t) and "breath" in t:
        return "Altered mental status with respiratory symptoms"
    return None


def detect_mental_health_red_flag(text: str) -> Optional[str]:
    t = (text or "").lower()
    if re.search(r"suicid|kill.*myself|end.*my.*life|want.*to.*die|better.*off.*dead", t):
        return "Possible suicidal ideation - immediate evaluation needed"
    if re.search(r"hurt.*myself|harm.*myself|cutting|self.*harm", t):
        return "Self-harm concern - needs mental health evaluation"
    if re.search(r"voices.*telling|hearing.*voices|seeing.*things.*not.*there", t):
        return "Possible psychotic symptoms"
    return None


# ---------- Preventive screenings ----------

@dataclass(frozen=True)
class ScreeningGuideline:
    id: str
    name: str
    frequency: str
    min_age: int
    max_age: Optional[int] = None
    sex: str = "all"
    risk_factors: Tuple[str, ...] = ()

    def label(self) -> str:
        return f"{self.name} ({self.frequency})"


SCREENING_GUIDELINES: Tuple[ScreeningGuideline, ...] = (
    ScreeningGuideline("bp_screening", "Blood pressure screening", "annually", 18),
    ScreeningGuideline(
        "colorectal_screening",
        "Colorectal cancer screening",
        "every 10 years (colonoscopy) or annually (FIT)",
        45,
        75,
    ),
    ScreeningGuideline("mammogram", "Mammogram for breast cancer", "every 2 years", 50, 74, "female"),
    ScreeningGuideline(
        "cervical_screening",
        "Cervical cancer screening (Pap smear)",
        "every 3 years (21-29) or every 5 years with HPV test (30-65)",
        21,
        65,
        "female",
    ),
    ScreeningGuideline(
        "lung_ct",
        "Low-dose CT for lung cancer",
        "annually",
        50,
        80,
        risk_factors=("smoker", "former_smoker"),
    ),
    ScreeningGuideline(
        "diabetes_screening",
        "Diabetes screening (A1C or fasting glucose)",
        "every 3 years",
        35,
        70,
        risk_factors=("overweight", "obese"),
    ),
    ScreeningGuideline("lipid_screening", "Lipid panel (cholesterol)", "every 5 years", 40, 75),
    ScreeningGuideline(
        "prostate_screening",
        "Prostate cancer screening (PSA) - discuss with doctor",
        "shared decision making",
        55,
        69,
        "male",
    ),
    ScreeningGuideline("osteoporosis_screening", "Bone density screening (DEXA)", "at least once", 65, sex="female"),
    ScreeningGuideline("depression_screening", "Depression screening", "annually or as needed", 12),
    ScreeningGuideline("hiv_screening", "HIV screening", "at least once (15-65), more if high risk", 15, 65),
    ScreeningGuideline("hepc_screening", "Hepatitis C screening", "once", 18, 79),
    ScreeningGuideline(
        "aaa_screening",
        "Abdominal aortic aneurysm screening (ultrasound)",
        "once",
        65,
        75,
        "male",
        ("smoker", "former_smoker"),
    ),
)


def normalize_sex(sex: Optional[str]) -> str:
    s = (sex or "").strip().lower()
    if s in {"male", "m", "man"}:
        return "male"
    if s in {"female", "f", "woman"}:
        return "female"
    return "unknown"


def recommend_screenings(age: int, sex: Optional[str], risk_factors: Iterable[str] = ()) -> List[str]:
    """
    Age/sex-gated screening labels. Rows that need a risk factor are
    only included when one of the supplied factors matches.
    """
    normalized_sex = normalize_sex(sex)
    factors = [rf.strip().lower() for rf in risk_factors if rf and rf.strip()]
    out: List[str] = []
    for g in SCREENING_GUIDELINES:
        if age < g.min_age:
            continue
        if g.max_age is not None and age > g.max_age:
            continue
        if g.sex != "all" and g.sex != normalized_sex:
            continue
        if g.risk_factors:
            if not any(rf in f or f in rf for rf in g.risk_factors for f in factors):
                continue
        out.append(g.label())
    return out


# ---------- Free-text demographics ----------

_AGE_RE = re.compile(r"\b(\d{1,3})\s*(?:y(?:ears?)?(?:\s*old)?|yo)?\b", re.IGNORECASE)
_KG_RE = re.compile(r"(\d{2,3}(?:\.\d+)?)\s*kg", re.IGNORECASE)
_LB_RE = re.compile(r"(\d{2,3}(?:\.\d+)?)\s*(?:lbs?|pounds)", re.IGNORECASE)
_M_RE = re.compile(r"(\d(?:\.\d+)?)\s*m\b", re.IGNORECASE)
_CM_RE = re.compile(r"(\d{3}(?:\.\d+)?)\s*cm", re.IGNORECASE)
_FT_IN_RE = re.compile(r"(\d)\s*(?:ft|')\s*(\d{1,2})?\s*(?:in|\")?", re.IGNORECASE)
_SEX_RE = re.compile(r"\b(female|male|woman|man|f|m)\b", re.IGNORECASE)


def parse_demographics(text: str) -> Dict[str, object]:
    """
    Best-effort parse of answers like '40, female, 70kg, 1.65m'.
    Only keys that could be read are returned.
    """
    t = text or ""
    out: Dict[str, object] = {}

    kg = _KG_RE.search(t)
    lb = _LB_RE.search(t)
    if kg:
        out["weight_kg"] = float(kg.group(1))
    elif lb:
        out["weight_kg"] = round(float(lb.group(1)) * 0.453592, 1)

    cm = _CM_RE.search(t)
    metres = _M_RE.search(t)
    ft_in = _FT_IN_RE.search(t)
    if cm:
        out["height_m"] = float(cm.group(1)) / 100.0
    elif metres:
        out["height_m"] = float(metres.group(1))
    elif ft_in:
        inches = int(ft_in.group(1)) * 12 + int(ft_in.group(2) or 0)
        out["height_m"] = round(inches * 0.0254, 2)

    # strip the measurement tokens before looking for a bare age
    remainder = _KG_RE.sub(" ", t)
    remainder = _LB_RE.sub(" ", remainder)
    remainder = _CM_RE.sub(" ", remainder)
    remainder = _M_RE.sub(" ", remainder)
    remainder = _FT_IN_RE.sub(" ", remainder)
    for m in _AGE_RE.finditer(remainder):
        value = int(m.group(1))
        if 0 < value < 120:
            out["age"] = value
            break

    sex_match = _SEX_RE.search(remainder)
    if sex_match:
        out["sex"] = normalize_sex(sex_match.group(1))

    return out
