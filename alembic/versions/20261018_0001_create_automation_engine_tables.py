"""create automation engine tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "tenants"):
        op.create_table(
            "tenants",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("slug", sa.String(length=80), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("timezone", sa.String(length=64), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if not _table_exists(inspector, "tenant_api_keys"):
        op.create_table(
            "tenant_api_keys",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("key_prefix", sa.String(length=24), nullable=False),
            sa.Column("key_hash", sa.String(length=128), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key_hash"),
        )
        op.create_index("ix_tenant_api_keys_tenant_id", "tenant_api_keys", ["tenant_id"])
        op.create_index("ix_tenant_api_keys_key_prefix", "tenant_api_keys", ["key_prefix"])
        op.create_index("ix_tenant_api_keys_tenant_status", "tenant_api_keys", ["tenant_id", "status"])

    if not _table_exists(inspector, "agents"):
        op.create_table(
            "agents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("open_conversations", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_agents_tenant_id", "agents", ["tenant_id"])
        op.create_index("ix_agents_tenant_active", "agents", ["tenant_id", "is_active"])

    if not _table_exists(inspector, "contacts"):
        op.create_table(
            "contacts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=True),
            sa.Column("phone", sa.String(length=40), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("tags_json", sa.JSON(), nullable=True),
            sa.Column("custom_fields_json", sa.JSON(), nullable=True),
            sa.Column("lifecycle_stage", sa.String(length=40), nullable=True),
            sa.Column("assigned_agent_id", sa.String(length=36), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.ForeignKeyConstraint(["assigned_agent_id"], ["agents.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_contacts_tenant_id", "contacts", ["tenant_id"])
        op.create_index("ix_contacts_assigned_agent_id", "contacts", ["assigned_agent_id"])
        op.create_index("ix_contacts_tenant_email", "contacts", ["tenant_id", "email"])
        op.create_index("ix_contacts_tenant_phone", "contacts", ["tenant_id", "phone"])

    if not _table_exists(inspector, "automation_rules"):
        op.create_table(
            "automation_rules",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("trigger_type", sa.String(length=60), nullable=False),
            sa.Column("trigger_config_json", sa.JSON(), nullable=True),
            sa.Column("conditions_json", sa.JSON(), nullable=True),
            sa.Column("actions_json", sa.JSON(), nullable=True),
            sa.Column("delay_config_json", sa.JSON(), nullable=True),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("template_key", sa.String(length=60), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "name", name="uq_automation_rules_tenant_name"),
        )
        op.create_index("ix_automation_rules_tenant_id", "automation_rules", ["tenant_id"])
        op.create_index("ix_automation_rules_trigger_type", "automation_rules", ["trigger_type"])
        op.create_index("ix_automation_rules_template_key", "automation_rules", ["template_key"])
        op.create_index(
            "ix_automation_rules_tenant_trigger_status_priority",
            "automation_rules",
            ["tenant_id", "trigger_type", "status", "priority"],
        )

    if not _table_exists(inspector, "automation_executions"):
        op.create_table(
            "automation_executions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("rule_id", sa.String(length=36), nullable=False),
            sa.Column("rule_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("contact_id", sa.String(length=36), nullable=True),
            sa.Column("trigger_type", sa.String(length=60), nullable=False),
            sa.Column("trigger_source", sa.String(length=60), nullable=True),
            sa.Column("trigger_event_json", sa.JSON(), nullable=True),
            sa.Column("actions_snapshot_json", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("resume_cursor_json", sa.JSON(), nullable=True),
            sa.Column("steps_total", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("steps_succeeded", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("steps_failed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("next_wake_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("error_message", sa.String(length=500), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("execution_time_ms", sa.Integer(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"]),
            sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_automation_executions_tenant_id", "automation_executions", ["tenant_id"])
        op.create_index("ix_automation_executions_rule_id", "automation_executions", ["rule_id"])
        op.create_index("ix_automation_executions_contact_id", "automation_executions", ["contact_id"])
        op.create_index(
            "ix_automation_executions_rule_created_at",
            "automation_executions",
            ["rule_id", "created_at"],
        )
        op.create_index(
            "ix_automation_executions_tenant_status",
            "automation_executions",
            ["tenant_id", "status"],
        )

    if not _table_exists(inspector, "automation_execution_steps"):
        op.create_table(
            "automation_execution_steps",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("execution_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("step_index", sa.Integer(), nullable=False),
            sa.Column("step_path", sa.String(length=255), nullable=False),
            sa.Column("action_type", sa.String(length=40), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("input_json", sa.JSON(), nullable=True),
            sa.Column("output_json", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.String(length=500), nullable=True),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["execution_id"], ["automation_executions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "execution_id",
                "sequence",
                name="uq_automation_execution_steps_execution_sequence",
            ),
        )
        op.create_index(
            "ix_automation_execution_steps_execution_id",
            "automation_execution_steps",
            ["execution_id"],
        )

    if not _table_exists(inspector, "automation_jobs"):
        op.create_table(
            "automation_jobs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("execution_id", sa.String(length=36), nullable=False),
            sa.Column("job_type", sa.String(length=40), nullable=False),
            sa.Column("resume_step", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("backoff_type", sa.String(length=20), nullable=False, server_default="exponential"),
            sa.Column("backoff_delay_ms", sa.Integer(), nullable=False, server_default="1000"),
            sa.Column("run_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("locked_by", sa.String(length=120), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.ForeignKeyConstraint(["execution_id"], ["automation_executions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_automation_jobs_tenant_id", "automation_jobs", ["tenant_id"])
        op.create_index("ix_automation_jobs_execution_id", "automation_jobs", ["execution_id"])
        op.create_index("ix_automation_jobs_status_run_at", "automation_jobs", ["status", "run_at"])
        op.create_index(
            "ix_automation_jobs_tenant_status_run_at",
            "automation_jobs",
            ["tenant_id", "status", "run_at"],
        )

    if not _table_exists(inspector, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("event_id", sa.String(length=160), nullable=False),
            sa.Column("topic", sa.String(length=120), nullable=True),
            sa.Column("tenant_id", sa.String(length=36), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="processing"),
            sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("error_message", sa.String(length=500), nullable=True),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="1"),
            _created_at(),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
        )
        op.create_index("ix_webhook_events_tenant_id", "webhook_events", ["tenant_id"])

    if not _table_exists(inspector, "webhook_logs"):
        op.create_table(
            "webhook_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("event_id", sa.String(length=160), nullable=True),
            sa.Column("topic", sa.String(length=120), nullable=True),
            sa.Column("tenant_id", sa.String(length=36), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="received"),
            sa.Column("payload_json", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.String(length=500), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_webhook_logs_event_id", "webhook_logs", ["event_id"])
        op.create_index("ix_webhook_logs_tenant_id", "webhook_logs", ["tenant_id"])
        op.create_index("ix_webhook_logs_provider_created_at", "webhook_logs", ["provider", "created_at"])

    if not _table_exists(inspector, "store_connections"):
        op.create_table(
            "store_connections",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("shop_domain", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="connected"),
            _created_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("provider", "shop_domain", name="uq_store_connections_provider_shop_domain"),
        )
        op.create_index("ix_store_connections_tenant_id", "store_connections", ["tenant_id"])

    if not _table_exists(inspector, "outbound_messages"):
        op.create_table(
            "outbound_messages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("execution_id", sa.String(length=36), nullable=True),
            sa.Column("contact_id", sa.String(length=36), nullable=True),
            sa.Column("channel", sa.String(length=20), nullable=False),
            sa.Column("provider", sa.String(length=60), nullable=False),
            sa.Column("recipient", sa.String(length=255), nullable=False),
            sa.Column("content", sa.String(length=2000), nullable=False),
            sa.Column("template_id", sa.String(length=120), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
            sa.Column("external_message_id", sa.String(length=120), nullable=True),
            sa.Column("error_message", sa.String(length=255), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
            sa.ForeignKeyConstraint(["execution_id"], ["automation_executions.id"]),
            sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_outbound_messages_tenant_id", "outbound_messages", ["tenant_id"])
        op.create_index("ix_outbound_messages_execution_id", "outbound_messages", ["execution_id"])
        op.create_index("ix_outbound_messages_provider", "outbound_messages", ["provider"])
        op.create_index(
            "ix_outbound_messages_tenant_provider_created_at",
            "outbound_messages",
            ["tenant_id", "provider", "created_at"],
        )


def downgrade() -> None:
    for table_name in (
        "outbound_messages",
        "store_connections",
        "webhook_logs",
        "webhook_events",
        "automation_jobs",
        "automation_execution_steps",
        "automation_executions",
        "automation_rules",
        "contacts",
        "agents",
        "tenant_api_keys",
        "tenants",
    ):
        op.drop_table(table_name)
