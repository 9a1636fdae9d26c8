"""
Tier matrix loader for config/entitlements.yml.

The YAML file is the source for seeding the feature_entitlements table.
At runtime the table is authoritative; DEFAULT_MATRIX is only used when a
tier has not been seeded.

Usage:
    from habit_billing.entitlements.loader import load_entitlement_matrix

    matrix = load_entitlement_matrix()
    matrix["free"]["max_habits"]  # 3
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from habit_billing.entitlements.models import (
    DISABLED, UNLIMITED, EntitlementSet, encode_feature_value,
)
from habit_billing.models.feature_entitlement import FeatureEntitlement

logger = logging.getLogger(__name__)

TierMatrix = Dict[str, Dict[str, Any]]

_CONFIG_FILENAME = "entitlements.yml"

DEFAULT_MATRIX: TierMatrix = {
    "free": {
        "max_habits": 3,
        "analytics_days": 7,
        "heatmap_months": 1,
        "ai_insights_per_week": DISABLED,
        "data_export": False,
        "max_reminders": 1,
        "schedule_types": ["daily"],
    },
    "plus": {
        "max_habits": 15,
        "analytics_days": 30,
        "heatmap_months": 6,
        "ai_insights_per_week": 1,
        "data_export": False,
        "max_reminders": UNLIMITED,
        "schedule_types": ["daily", "weekly_days", "weekly_target"],
    },
    "pro": {
        "max_habits": UNLIMITED,
        "analytics_days": 365,
        "heatmap_months": 12,
        "ai_insights_per_week": UNLIMITED,
        "data_export": True,
        "max_reminders": UNLIMITED,
        "schedule_types": ["daily", "weekly_days", "weekly_target"],
    },
}


def _resolve_path(config_path: Optional[str] = None) -> Path:
    if config_path:
        return Path(config_path)

    env_path = os.getenv("ENTITLEMENTS_CONFIG_PATH")
    if env_path:
        return Path(env_path)

    candidates = [
        Path(__file__).parent.parent.parent / "config" / _CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / _CONFIG_FILENAME,
    ]
    for p in candidates:
        resolved = p.resolve()
        if resolved.exists():
            return resolved

    raise FileNotFoundError(
        f"{_CONFIG_FILENAME} not found in: {[str(p) for p in candidates]}"
    )


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == UNLIMITED.name:
            return UNLIMITED
        if lowered == DISABLED.name:
            return DISABLED
    return value


def load_entitlement_matrix(config_path: Optional[str] = None) -> TierMatrix:
    """
    Load the tier matrix from YAML.

    Args:
        config_path: Explicit path; defaults to ENTITLEMENTS_CONFIG_PATH or
            the repository config/ directory.

    Returns:
        Mapping of tier -> feature_key -> value

    Raises:
        FileNotFoundError: If no config file can be found
        ValueError: If the file has no 'tiers' mapping
    """
    path = _resolve_path(config_path)
    logger.info("Loading entitlement matrix from %s", path)

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    tiers = raw.get("tiers")
    if not isinstance(tiers, dict) or not tiers:
        raise ValueError(f"{path} must define a non-empty 'tiers' mapping")

    matrix: TierMatrix = {}
    for tier, features in tiers.items():
        matrix[str(tier)] = {
            str(key): _normalize(value) for key, value in (features or {}).items()
        }

    logger.info("Loaded entitlement matrix: tiers=%s", sorted(matrix))
    return matrix


def build_seed_rows(matrix: TierMatrix) -> List[Dict[str, Any]]:
    """Flatten a tier matrix into FeatureEntitlement column dicts."""
    rows = []
    for tier, features in matrix.items():
        for feature_key, value in features.items():
            row = {"tier": tier, "feature_key": feature_key}
            row.update(encode_feature_value(feature_key, value))
            rows.append(row)
    return rows


def default_entitlement_set(tier: str) -> EntitlementSet:
    """Built-in entitlements for a tier; unknown tiers get free."""
    features = DEFAULT_MATRIX.get(tier) or DEFAULT_MATRIX["free"]
    return EntitlementSet.from_features(tier, dict(features))


def seed_feature_entitlements(db, matrix: Optional[TierMatrix] = None) -> int:
    """
    Upsert the tier matrix into feature_entitlements.

    Existing (tier, feature_key) rows are overwritten in place; rows for
    features missing from the matrix are left alone. Does not commit.

    Args:
        db: SQLAlchemy session
        matrix: Tier matrix (defaults to DEFAULT_MATRIX)

    Returns:
        Number of rows inserted or updated
    """
    rows = build_seed_rows(matrix or DEFAULT_MATRIX)
    for values in rows:
        existing = db.query(FeatureEntitlement).filter(
            FeatureEntitlement.tier == values["tier"],
            FeatureEntitlement.feature_key == values["feature_key"],
        ).first()
        if existing is None:
            db.add(FeatureEntitlement(**values))
        else:
            existing.value_int = values["value_int"]
            existing.value_bool = values["value_bool"]
            existing.value_text = values["value_text"]
    db.flush()

    logger.info("Seeded feature entitlements", extra={"rows": len(rows)})
    return len(rows)
