"""
Entitlement value types.

An EntitlementSet is the resolved feature-limit set for one tier. Limit
features hold an integer, UNLIMITED or DISABLED; flags hold a bool; set
features hold a frozenset of allowed values.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union


class _LimitMarker:
    """Named sentinel for non-numeric limit values."""

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name.upper()

    def __str__(self) -> str:
        return self.name

    def __reduce__(self):
        return (_marker_for, (self.name,))


UNLIMITED = _LimitMarker("unlimited")
DISABLED = _LimitMarker("disabled")


def _marker_for(name: str) -> _LimitMarker:
    return UNLIMITED if name == UNLIMITED.name else DISABLED


Limit = Union[int, _LimitMarker]

LIMIT_FEATURES = (
    "max_habits",
    "analytics_days",
    "heatmap_months",
    "ai_insights_per_week",
    "max_reminders",
)
FLAG_FEATURES = ("data_export",)
SET_FEATURES = ("schedule_types",)


def limit_as_count(value: Limit) -> Optional[int]:
    """
    Convert a limit to a plain count.

    Returns None for UNLIMITED and 0 for DISABLED.
    """
    if value is UNLIMITED:
        return None
    if value is DISABLED:
        return 0
    return int(value)


def _render(value: Any) -> Any:
    if isinstance(value, _LimitMarker):
        return str(value)
    if isinstance(value, frozenset):
        return sorted(value)
    return value


@dataclass(frozen=True)
class EntitlementSet:
    """Resolved feature limits for a tier."""

    tier: str
    max_habits: Limit
    schedule_types: FrozenSet[str]
    analytics_days: Limit
    heatmap_months: Limit
    ai_insights_per_week: Limit
    max_reminders: Limit
    data_export: bool
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def habit_limit(self) -> Optional[int]:
        """Maximum unarchived habits, None when unlimited."""
        return limit_as_count(self.max_habits)

    def allows_schedule(self, schedule_type: str) -> bool:
        return schedule_type in self.schedule_types

    def to_dict(self) -> Dict[str, Any]:
        """Render for the read API; markers become their names."""
        result = {
            "tier": self.tier,
            "max_habits": _render(self.max_habits),
            "schedule_types": _render(self.schedule_types),
            "analytics_days": _render(self.analytics_days),
            "heatmap_months": _render(self.heatmap_months),
            "ai_insights_per_week": _render(self.ai_insights_per_week),
            "max_reminders": _render(self.max_reminders),
            "data_export": self.data_export,
        }
        for key, value in self.extra.items():
            result[key] = _render(value)
        return result

    @classmethod
    def from_features(cls, tier: str, features: Dict[str, Any]) -> "EntitlementSet":
        """
        Build from a decoded feature map.

        Missing limit features default to DISABLED, missing flags to False
        and missing sets to empty; unknown keys land in extra.
        """
        known = set(LIMIT_FEATURES) | set(FLAG_FEATURES) | set(SET_FEATURES)
        return cls(
            tier=tier,
            max_habits=features.get("max_habits", DISABLED),
            schedule_types=_as_frozenset(features.get("schedule_types", ())),
            analytics_days=features.get("analytics_days", DISABLED),
            heatmap_months=features.get("heatmap_months", DISABLED),
            ai_insights_per_week=features.get("ai_insights_per_week", DISABLED),
            max_reminders=features.get("max_reminders", DISABLED),
            data_export=bool(features.get("data_export", False)),
            extra={k: v for k, v in features.items() if k not in known},
        )


def _as_frozenset(value: Union[str, Iterable[str]]) -> FrozenSet[str]:
    if isinstance(value, str):
        return frozenset(part.strip() for part in value.split(",") if part.strip())
    return frozenset(value)


def decode_feature_value(
    feature_key: str,
    value_int: Optional[int],
    value_bool: Optional[bool],
    value_text: Optional[str],
) -> Any:
    """
    Decode one FeatureEntitlement row into a Python value.

    Storage encoding:
        integers        -> value_int
        unlimited       -> value_text = 'unlimited'
        disabled        -> value_bool = False on a limit feature
        flags           -> value_bool
        sets            -> comma separated value_text
    """
    if value_text is not None and value_text.strip().lower() == UNLIMITED.name:
        return UNLIMITED
    if value_int is not None:
        return int(value_int)
    if value_bool is not None:
        if feature_key in LIMIT_FEATURES:
            return UNLIMITED if value_bool else DISABLED
        return bool(value_bool)
    if value_text is not None:
        if feature_key in SET_FEATURES:
            return _as_frozenset(value_text)
        return value_text
    return None


def encode_feature_value(feature_key: str, value: Any) -> Dict[str, Any]:
    """Inverse of decode_feature_value, producing column kwargs."""
    columns = {"value_int": None, "value_bool": None, "value_text": None}

    if isinstance(value, _LimitMarker):
        value = str(value)

    if isinstance(value, bool):
        columns["value_bool"] = value
    elif isinstance(value, int):
        columns["value_int"] = value
    elif isinstance(value, str) and value.lower() == UNLIMITED.name:
        columns["value_text"] = UNLIMITED.name
    elif isinstance(value, str) and value.lower() == DISABLED.name:
        columns["value_bool"] = False
    elif isinstance(value, (set, frozenset)):
        columns["value_text"] = ",".join(sorted(str(v) for v in value))
    elif isinstance(value, (list, tuple)):
        columns["value_text"] = ",".join(str(v) for v in value)
    elif isinstance(value, str):
        columns["value_text"] = value
    else:
        raise ValueError(f"Unsupported value for feature {feature_key!r}: {value!r}")

    return columns
