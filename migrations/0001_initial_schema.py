"""
Initial database schema for coupon-core
"""

from yoyo import step

__depends__ = {}

steps = [
    step(
        """
        CREATE TABLE coupons (
            id SERIAL PRIMARY KEY,
            code VARCHAR(255) NOT NULL UNIQUE,
            claimed BOOLEAN NOT NULL DEFAULT FALSE,
            claimed_by VARCHAR(255),
            claimed_at TIMESTAMPTZ,
            claim_ref VARCHAR(64) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT claim_fields_set_iff_claimed CHECK (
                (claimed AND claimed_by IS NOT NULL AND claimed_at IS NOT NULL)
                OR (NOT claimed AND claimed_by IS NULL AND claimed_at IS NULL)
            )
        )
        """,
        """
        DROP TABLE coupons
        """,
    ),
    step(
        """
        CREATE INDEX idx_coupons_claimed_by_claimed_at
        ON coupons (claimed_by, claimed_at DESC)
        """,
        """
        DROP INDEX idx_coupons_claimed_by_claimed_at
        """,
    ),
    step(
        """
        CREATE INDEX idx_coupons_unclaimed ON coupons (id) WHERE NOT claimed
        """,
        """
        DROP INDEX idx_coupons_unclaimed
        """,
    ),
]
