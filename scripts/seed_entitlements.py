"""
Seed the feature_entitlements table from config/entitlements.yml.

Idempotent: existing (tier, feature_key) rows are updated in place.

Usage:
    python -m scripts.seed_entitlements [path/to/entitlements.yml]

Environment variables:
    DATABASE_URL: Database connection string
    ENTITLEMENTS_CONFIG_PATH: Optional override for the YAML path
"""

import logging
import os
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from habit_billing.database.session import build_engine
from habit_billing.entitlements.loader import load_entitlement_matrix, seed_feature_entitlements

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def seed(database_url: str, config_path: Optional[str] = None) -> int:
    """Load the matrix and upsert it; returns the number of rows written."""
    matrix = load_entitlement_matrix(config_path)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=build_engine(database_url))

    session = SessionLocal()
    try:
        count = seed_feature_entitlements(session, matrix)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info(f"Seeded {count} feature entitlement rows for tiers {sorted(matrix)}")
    return count


def main():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL environment variable is required")
        sys.exit(1)

    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        seed(database_url, config_path)
    except (FileNotFoundError, ValueError, SQLAlchemyError) as e:
        logger.error(f"Seeding failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
