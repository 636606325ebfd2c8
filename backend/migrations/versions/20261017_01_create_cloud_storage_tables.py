"""create cloud storage health, credential, preference and upload tables

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261017_01"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, comment="创建时间"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, comment="更新时间"),
    ]


def upgrade() -> None:
    op.create_table(
        "cloud_storage_health_record",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="用户 ID"),
        sa.Column("provider", sa.String(length=50), nullable=False, comment="Provider 名称"),
        sa.Column("raw_status", sa.String(length=20), nullable=False, server_default="healthy", comment="作业级状态: healthy/degraded/unhealthy"),
        sa.Column("consolidated_status", sa.String(length=30), nullable=True, comment="合并状态，首次评估前为空"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0", comment="连续失败次数"),
        sa.Column("last_error_kind", sa.String(length=40), nullable=True, comment="最近一次错误分类"),
        sa.Column("last_error_message", sa.Text(), nullable=True, comment="最近一次错误信息"),
        sa.Column("last_error_context", postgresql.JSONB(), nullable=True, comment="最近一次错误上下文"),
        sa.Column("token_refresh_failures", sa.Integer(), nullable=False, server_default="0", comment="Token 刷新连续失败次数"),
        sa.Column("last_token_refresh_attempt_at", sa.DateTime(timezone=True), nullable=True, comment="最近一次 Token 刷新尝试时间"),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True, comment="凭证过期时间（同步自凭证表）"),
        sa.Column("last_successful_operation_at", sa.DateTime(timezone=True), nullable=True, comment="最近一次成功操作时间"),
        sa.Column("operational_test_result", postgresql.JSONB(), nullable=True, comment="最近一次连通性探测结果"),
        sa.Column("requires_reconnection", sa.Boolean(), nullable=False, server_default="false", comment="是否需要用户重新授权"),
        sa.Column("provider_specific_data", postgresql.JSONB(), nullable=True, comment="Provider 配额/元数据"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_cloud_storage_health_record")),
        sa.UniqueConstraint("user_id", "provider", name="uq_cloud_storage_health_record_user_provider"),
    )
    op.create_index(op.f("ix_cloud_storage_health_record_user_id"), "cloud_storage_health_record", ["user_id"], unique=False)
    op.create_index(
        "ix_cloud_storage_health_record_provider_status",
        "cloud_storage_health_record",
        ["provider", "consolidated_status"],
        unique=False,
    )

    op.create_table(
        "cloud_storage_credential",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="用户 ID"),
        sa.Column("provider", sa.String(length=50), nullable=False, comment="Provider 名称"),
        sa.Column("access_token", sa.Text(), nullable=False, comment="访问令牌"),
        sa.Column("refresh_token", sa.Text(), nullable=True, comment="刷新令牌，为空表示不可自动续期"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True, comment="访问令牌过期时间"),
        sa.Column("scopes", postgresql.JSONB(), nullable=True, comment="授权范围"),
        sa.Column("extra", postgresql.JSONB(), nullable=True, comment="Provider 附加字段 (bucket/region 等)"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_cloud_storage_credential")),
        sa.UniqueConstraint("user_id", "provider", name="uq_cloud_storage_credential_user_provider"),
    )
    op.create_index(op.f("ix_cloud_storage_credential_user_id"), "cloud_storage_credential", ["user_id"], unique=False)

    op.create_table(
        "cloud_storage_user_preference",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="用户 ID"),
        sa.Column("provider", sa.String(length=50), nullable=False, comment="首选 Provider 名称"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_cloud_storage_user_preference")),
        sa.UniqueConstraint("user_id", name=op.f("uq_cloud_storage_user_preference_user_id")),
    )

    op.create_table(
        "file_upload",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="上传者用户 ID"),
        sa.Column("provider", sa.String(length=50), nullable=True, comment="目标 Provider"),
        sa.Column("original_filename", sa.String(length=255), nullable=False, comment="原始文件名"),
        sa.Column("cloud_storage_error_type", sa.String(length=40), nullable=True, comment="终态错误分类"),
        sa.Column("cloud_storage_error_context", postgresql.JSONB(), nullable=True, comment="终态错误上下文"),
        sa.Column("retry_attempts", sa.Integer(), nullable=False, server_default="0", comment="已进行的重试次数"),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True, comment="最近一次处理时间"),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True, comment="成功上传到云存储的时间"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_file_upload")),
    )
    op.create_index(op.f("ix_file_upload_user_id"), "file_upload", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_file_upload_user_id"), table_name="file_upload")
    op.drop_table("file_upload")
    op.drop_table("cloud_storage_user_preference")
    op.drop_index(op.f("ix_cloud_storage_credential_user_id"), table_name="cloud_storage_credential")
    op.drop_table("cloud_storage_credential")
    op.drop_index("ix_cloud_storage_health_record_provider_status", table_name="cloud_storage_health_record")
    op.drop_index(op.f("ix_cloud_storage_health_record_user_id"), table_name="cloud_storage_health_record")
    op.drop_table("cloud_storage_health_record")
