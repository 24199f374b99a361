"""Deployments and provider blacklist

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "deployments",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("channel", sa.Text(), nullable=False),
        # AES-256-GCM ciphertext, never plaintext
        sa.Column("channel_token", sa.Text(), nullable=False),
        sa.Column("channel_api_key", sa.Text(), nullable=True),
        sa.Column("payment_provider", sa.Text(), nullable=False, server_default="stripe"),
        sa.Column("stripe_session_id", sa.Text(), nullable=True, unique=True),
        sa.Column("stripe_payment_intent_id", sa.Text(), nullable=True),
        sa.Column("marketplace_deployment_id", sa.Text(), nullable=True),
        sa.Column("lease_id", sa.Text(), nullable=True),
        sa.Column("provider", sa.Text(), nullable=True),
        sa.Column("service_url", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'deploying', 'active', 'failed')",
            name="ck_deployments_status",
        ),
    )

    op.create_table(
        "provider_blacklist",
        sa.Column("provider_address", sa.Text(), primary_key=True),
        sa.Column("reason", sa.Text(), nullable=False, server_default="Provider blacklisted"),
        sa.Column("created_at", sa.Float(), nullable=False),
        # NULL = permanent
        sa.Column("expires_at", sa.Float(), nullable=True),
    )

    op.create_index(
        "idx_deployments_user",
        "deployments",
        [sa.text("user_id"), sa.text("created_at DESC")],
    )
    op.create_index(
        "idx_deployments_status",
        "deployments",
        [sa.text("status"), sa.text("updated_at ASC")],
    )
    op.create_index("idx_blacklist_expires", "provider_blacklist", ["expires_at"])


def downgrade() -> None:
    op.drop_index("idx_blacklist_expires")
    op.drop_index("idx_deployments_status")
    op.drop_index("idx_deployments_user")
    op.drop_table("provider_blacklist")
    op.drop_table("deployments")
