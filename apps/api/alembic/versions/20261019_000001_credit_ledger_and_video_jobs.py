"""create credit ledger and video job tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "credit_packages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("initial_credits", sa.Integer(), nullable=False),
        sa.Column("remaining_credits", sa.Integer(), nullable=False),
        sa.Column("frozen_credits", sa.Integer(), nullable=False),
        sa.Column("trans_type", sa.String(), nullable=False),
        sa.Column("order_no", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("remaining_credits >= 0", name="ck_credit_packages_remaining_non_negative"),
        sa.CheckConstraint("frozen_credits >= 0", name="ck_credit_packages_frozen_non_negative"),
        sa.CheckConstraint(
            "remaining_credits + frozen_credits <= initial_credits",
            name="ck_credit_packages_within_initial",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "order_no", name="uq_credit_packages_user_order"),
    )
    op.create_index(op.f("ix_credit_packages_user_id"), "credit_packages", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_packages_order_no"), "credit_packages", ["order_no"], unique=False)
    op.create_index("ix_credit_packages_user_status", "credit_packages", ["user_id", "status"], unique=False)
    op.create_index("ix_credit_packages_user_expired_at", "credit_packages", ["user_id", "expired_at"], unique=False)

    op.create_table(
        "credit_holds",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("video_uuid", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("package_allocation", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("video_uuid"),
    )
    op.create_index(op.f("ix_credit_holds_user_id"), "credit_holds", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_holds_status"), "credit_holds", ["status"], unique=False)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("trans_no", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("trans_type", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.String(), nullable=True),
        sa.Column("hold_id", sa.String(), nullable=True),
        sa.Column("video_uuid", sa.String(), nullable=True),
        sa.Column("order_no", sa.String(), nullable=True),
        sa.Column("remark", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("trans_no"),
    )
    op.create_index(op.f("ix_credit_transactions_user_id"), "credit_transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_trans_type"), "credit_transactions", ["trans_type"], unique=False)
    op.create_index(op.f("ix_credit_transactions_video_uuid"), "credit_transactions", ["video_uuid"], unique=False)
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)

    op.create_table(
        "video_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("uuid", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("external_task_id", sa.String(), nullable=True),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("aspect_ratio", sa.String(), nullable=True),
        sa.Column("start_image_url", sa.String(), nullable=True),
        sa.Column("original_video_url", sa.String(), nullable=True),
        sa.Column("video_url", sa.String(), nullable=True),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("upload_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("poll_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_poll_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generation_seconds", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("uuid"),
    )
    op.create_index(op.f("ix_video_jobs_user_id"), "video_jobs", ["user_id"], unique=False)
    op.create_index(op.f("ix_video_jobs_status"), "video_jobs", ["status"], unique=False)
    op.create_index(op.f("ix_video_jobs_external_task_id"), "video_jobs", ["external_task_id"], unique=False)
    op.create_index("ix_video_jobs_user_created", "video_jobs", ["user_id", "created_at"], unique=False)
    op.create_index("ix_video_jobs_status_next_poll", "video_jobs", ["status", "next_poll_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_video_jobs_status_next_poll", table_name="video_jobs")
    op.drop_index("ix_video_jobs_user_created", table_name="video_jobs")
    op.drop_index(op.f("ix_video_jobs_external_task_id"), table_name="video_jobs")
    op.drop_index(op.f("ix_video_jobs_status"), table_name="video_jobs")
    op.drop_index(op.f("ix_video_jobs_user_id"), table_name="video_jobs")
    op.drop_table("video_jobs")

    op.drop_index(op.f("ix_credit_transactions_created_at"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_video_uuid"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_trans_type"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_user_id"), table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index(op.f("ix_credit_holds_status"), table_name="credit_holds")
    op.drop_index(op.f("ix_credit_holds_user_id"), table_name="credit_holds")
    op.drop_table("credit_holds")

    op.drop_index("ix_credit_packages_user_expired_at", table_name="credit_packages")
    op.drop_index("ix_credit_packages_user_status", table_name="credit_packages")
    op.drop_index(op.f("ix_credit_packages_order_no"), table_name="credit_packages")
    op.drop_index(op.f("ix_credit_packages_user_id"), table_name="credit_packages")
    op.drop_table("credit_packages")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
