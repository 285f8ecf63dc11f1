from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "0001_m365_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "m365_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("studio_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("client_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("organizer_email", sa.String(length=255), nullable=True),
        sa.Column("teams_team_id", sa.String(length=128), nullable=True),
        sa.Column("teams_channel_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_m365_config_studio_id", "m365_config", ["studio_id"], unique=True)

    op.create_table(
        "m365_user_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("studio_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_type", sa.String(length=32), nullable=False, server_default="Bearer"),
        sa.Column("flow", sa.String(length=16), nullable=False, server_default="delegated"),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("obtained_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("studio_id", "user_id", name="uq_m365_user_tokens_studio_user"),
    )
    op.create_index("ix_m365_user_tokens_studio_id", "m365_user_tokens", ["studio_id"])
    op.create_index("ix_m365_user_tokens_revoked", "m365_user_tokens", ["revoked_at"])


def downgrade() -> None:
    op.drop_index("ix_m365_user_tokens_revoked", table_name="m365_user_tokens")
    op.drop_index("ix_m365_user_tokens_studio_id", table_name="m365_user_tokens")
    op.drop_table("m365_user_tokens")
    op.drop_index("ix_m365_config_studio_id", table_name="m365_config")
    op.drop_table("m365_config")
