from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Profile:
    """Read-only patient profile used to seed facts the user has not given yet."""

    user_id: str
    age: Optional[int] = None
    sex: Optional[str] = None
    weight_kg: Optional[float] = None
    height_m: Optional[float] = None
    conditions: List[str] = field(default_factory=list)
    medications: List[str] = field(default_factory=list)
    smoker: Optional[bool] = None

    def facts(self) -> Dict[str, object]:
        out: Dict[str, object] = {}
        for key in ("age", "sex", "weight_kg", "height_m", "smoker"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.conditions:
            out["conditions"] = list(self.conditions)
        if self.medications:
            out["medications"] = list(self.medications)
        if self.smoker:
            out["risk_factors"] = ["smoker"]
        return out


class ProfileStore:
    def load(self, user_id: str) -> Optional[Profile]:
        raise NotImplementedError


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: Optional[Dict[str, Profile]] = None) -> None:
        self._profiles: Dict[str, Profile] = dict(profiles or {})

    def add(self, profile: Profile) -> None:
        self._profiles[profile.user_id] = profile

    def load(self, user_id: str) -> Optional[Profile]:
        return self._profiles.get(user_id)
