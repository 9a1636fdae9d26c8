"""
FeatureEntitlement model: static per-tier feature configuration.

Entitlements are GLOBAL reference data, not owned by any user. They are
seeded out-of-band (scripts/seed_entitlements.py) and read-only at runtime.
"""

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Index, Integer, String, Text,
    UniqueConstraint,
)

from habit_billing.models.base import Base, generate_uuid
from habit_billing.models.subscription import TIER_ENUM


class FeatureEntitlement(Base):
    """One feature value for one tier."""

    __tablename__ = "feature_entitlements"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        TIER_ENUM,
        nullable=False
    )

    feature_key = Column(
        String(100),
        nullable=False,
        comment="Feature identifier (e.g., max_habits)"
    )

    value_int = Column(Integer, nullable=True)
    value_bool = Column(Boolean, nullable=True)
    value_text = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tier", "feature_key", name="uq_entitlement_tier_feature"),
        CheckConstraint(
            "value_int IS NOT NULL OR value_bool IS NOT NULL OR value_text IS NOT NULL",
            name="chk_entitlement_has_value",
        ),
        Index("ix_feature_entitlements_tier", "tier"),
    )

    def __repr__(self) -> str:
        return f"<FeatureEntitlement(tier={self.tier}, feature_key={self.feature_key})>"
