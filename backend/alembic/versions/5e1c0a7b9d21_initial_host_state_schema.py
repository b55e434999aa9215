"""initial host state schema

Revision ID: 5e1c0a7b9d21
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "5e1c0a7b9d21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.String(1023)),
        _ts("created_at"),
    )

    op.create_table(
        "hosts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("osquery_host_id", sa.String(255), nullable=True, unique=True),
        sa.Column("node_key", sa.String(255), nullable=True, unique=True),
        sa.Column("uuid", sa.String(255)),
        sa.Column("hostname", sa.String(255)),
        sa.Column("computer_name", sa.String(255)),
        sa.Column("platform", sa.String(255)),
        sa.Column("platform_like", sa.String(255)),
        sa.Column("osquery_version", sa.String(255)),
        sa.Column("os_version", sa.String(255)),
        sa.Column("uptime", sa.BigInteger()),
        sa.Column("memory", sa.BigInteger()),
        sa.Column("cpu_type", sa.String(255)),
        sa.Column("cpu_brand", sa.String(255)),
        sa.Column("cpu_physical_cores", sa.Integer()),
        sa.Column("cpu_logical_cores", sa.Integer()),
        sa.Column("hardware_vendor", sa.String(255)),
        sa.Column("hardware_model", sa.String(255)),
        sa.Column("hardware_serial", sa.String(255)),
        sa.Column("primary_ip", sa.String(45)),
        sa.Column("primary_mac", sa.String(17)),
        sa.Column("public_ip", sa.String(45)),
        _ts("detail_updated_at"),
        _ts("label_updated_at"),
        _ts("policy_updated_at"),
        _ts("last_enrolled_at"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("distributed_interval", sa.Integer()),
        sa.Column("logger_tls_period", sa.Integer()),
        sa.Column("config_tls_refresh", sa.Integer()),
        sa.Column("refetch_requested", sa.Boolean()),
        sa.Column(
            "team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="SET NULL"), nullable=True
        ),
    )
    op.create_index("ix_hosts_team", "hosts", ["team_id"])
    op.create_index("ix_hosts_platform", "hosts", ["platform"])
    op.create_index("ix_hosts_hostname", "hosts", ["hostname"])

    op.create_table(
        "host_seen_times",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        _ts("seen_time", nullable=False),
    )
    op.create_index("ix_host_seen_times_seen_time", "host_seen_times", ["seen_time"])

    op.create_table(
        "host_additional",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column("additional", sa.JSON(), nullable=True),
    )

    op.create_table(
        "host_users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("host_id", sa.Integer(), nullable=False),
        sa.Column("uid", sa.BigInteger(), nullable=True),
        sa.Column("username", sa.String(255)),
        sa.Column("user_type", sa.String(255)),
        sa.Column("groupname", sa.String(255)),
        sa.Column("shell", sa.String(255)),
        _ts("created_at"),
    )
    op.create_index("ix_host_users_host", "host_users", ["host_id"])

    op.create_table(
        "host_emails",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("host_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("source", sa.String(255), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("host_id", "email", "source", name="uq_host_emails_host_email_source"),
    )
    op.create_index("ix_host_emails_email", "host_emails", ["email"])

    op.create_table(
        "host_batteries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("host_id", sa.Integer(), nullable=False),
        sa.Column("serial_number", sa.String(255), nullable=False),
        sa.Column("cycle_count", sa.Integer()),
        sa.Column("health", sa.String(40)),
        _ts("updated_at"),
        sa.UniqueConstraint("host_id", "serial_number", name="uq_host_batteries_host_serial"),
    )

    op.create_table(
        "host_disks",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column("gigs_disk_space_available", sa.Float()),
        sa.Column("percent_disk_space_available", sa.Float()),
        _ts("updated_at"),
    )
    op.create_index("ix_host_disks_gigs", "host_disks", ["gigs_disk_space_available"])

    op.create_table(
        "host_device_auth",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "windows_updates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("host_id", sa.Integer(), nullable=False),
        sa.Column("date_epoch", sa.BigInteger(), nullable=False),
        sa.Column("kb_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("host_id", "kb_id", name="uq_windows_updates_host_kb"),
    )

    op.create_table(
        "software",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("version", sa.String(255)),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("bundle_identifier", sa.String(255)),
        sa.UniqueConstraint("name", "version", "source", name="uq_software_name_version_source"),
    )

    op.create_table(
        "host_software",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column(
            "software_id",
            sa.Integer(),
            sa.ForeignKey("software.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    op.create_index("ix_host_software_software", "host_software", ["software_id"])

    op.create_table(
        "mobile_device_management_solutions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("server_url", sa.String(255), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("name", "server_url", name="uq_mdm_solutions_name_url"),
    )

    op.create_table(
        "host_mdm",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column("enrolled", sa.Boolean()),
        sa.Column("server_url", sa.String(255)),
        sa.Column("installed_from_dep", sa.Boolean()),
        sa.Column(
            "mdm_id",
            sa.Integer(),
            sa.ForeignKey("mobile_device_management_solutions.id"),
            nullable=True,
        ),
    )
    op.create_index("ix_host_mdm_mdm_id", "host_mdm", ["mdm_id"])

    op.create_table(
        "host_munki_info",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column("version", sa.String(255), nullable=False),
        _ts("updated_at"),
    )

    op.create_table(
        "munki_issues",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("issue_type", sa.String(10), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("name", "issue_type", name="uq_munki_issues_name_type"),
    )

    op.create_table(
        "host_munki_issues",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column(
            "munki_issue_id", sa.Integer(), sa.ForeignKey("munki_issues.id"), primary_key=True
        ),
        _ts("created_at"),
    )
    op.create_index("ix_host_munki_issues_issue", "host_munki_issues", ["munki_issue_id"])

    op.create_table(
        "operating_systems",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("version", sa.String(150), nullable=False),
        sa.Column("arch", sa.String(150)),
        sa.Column("kernel_version", sa.String(150)),
        sa.Column("platform", sa.String(50)),
        sa.UniqueConstraint(
            "name", "version", "arch", "kernel_version", "platform",
            name="uq_operating_systems_identity",
        ),
    )

    op.create_table(
        "host_operating_system",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column(
            "os_id", sa.Integer(), sa.ForeignKey("operating_systems.id"), nullable=False
        ),
    )
    op.create_index("ix_host_operating_system_os", "host_operating_system", ["os_id"])

    op.create_table(
        "labels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("query", sa.Text()),
        sa.Column("platform", sa.String(255)),
        sa.Column("label_type", sa.String(16)),
        _ts("created_at"),
    )

    op.create_table(
        "label_membership",
        sa.Column(
            "label_id",
            sa.Integer(),
            sa.ForeignKey("labels.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("host_id", sa.Integer(), primary_key=True),
        _ts("updated_at"),
    )
    op.create_index("ix_label_membership_host", "label_membership", ["host_id"])

    op.create_table(
        "queries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("query", sa.Text(), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "packs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("platform", sa.String(255)),
        sa.Column("disabled", sa.Boolean()),
        sa.Column("pack_type", sa.String(64), nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "pack_targets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "pack_id", sa.Integer(), sa.ForeignKey("packs.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("target_type", sa.String(16), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("pack_id", "target_type", "target_id", name="uq_pack_targets"),
    )
    op.create_index("ix_pack_targets_target", "pack_targets", ["target_type", "target_id"])

    op.create_table(
        "scheduled_queries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "pack_id", sa.Integer(), sa.ForeignKey("packs.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "query_id",
            sa.Integer(),
            sa.ForeignKey("queries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("interval", sa.Integer()),
        sa.Column("snapshot", sa.Boolean(), nullable=True),
        sa.Column("removed", sa.Boolean(), nullable=True),
        sa.Column("platform", sa.String(255), nullable=True),
        sa.Column("version", sa.String(255), nullable=True),
        sa.Column("shard", sa.Integer(), nullable=True),
        sa.Column("denylist", sa.Boolean(), nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("pack_id", "name", name="uq_scheduled_queries_pack_name"),
    )

    op.create_table(
        "scheduled_query_stats",
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column(
            "scheduled_query_id",
            sa.Integer(),
            sa.ForeignKey("scheduled_queries.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("average_memory", sa.BigInteger()),
        sa.Column("denylisted", sa.Boolean()),
        sa.Column("executions", sa.BigInteger()),
        sa.Column("schedule_interval", sa.Integer()),
        _ts("last_executed", nullable=False),
        sa.Column("output_size", sa.BigInteger()),
        sa.Column("system_time", sa.BigInteger()),
        sa.Column("user_time", sa.BigInteger()),
        sa.Column("wall_time", sa.BigInteger()),
    )

    op.create_table(
        "policies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "team_id", sa.Integer(), sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("resolution", sa.Text()),
        sa.Column("platforms", sa.String(255)),
        _ts("created_at"),
        sa.UniqueConstraint("team_id", "name", name="uq_policies_team_name"),
    )

    op.create_table(
        "policy_membership",
        sa.Column(
            "policy_id",
            sa.Integer(),
            sa.ForeignKey("policies.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("host_id", sa.Integer(), primary_key=True),
        sa.Column("passes", sa.Boolean(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "ix_policy_membership_host_passes", "policy_membership", ["host_id", "passes"]
    )

    op.create_table(
        "aggregated_stats",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("stats_type", sa.String(32), primary_key=True),
        sa.Column("json_value", sa.JSON(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "locks",
        sa.Column("name", sa.String(255), primary_key=True),
        sa.Column("owner", sa.String(255), nullable=False),
        _ts("expires_at", nullable=False),
    )


def downgrade() -> None:
    for table in (
        "locks",
        "aggregated_stats",
        "policy_membership",
        "policies",
        "scheduled_query_stats",
        "scheduled_queries",
        "pack_targets",
        "packs",
        "queries",
        "label_membership",
        "labels",
        "host_operating_system",
        "operating_systems",
        "host_munki_issues",
        "munki_issues",
        "host_munki_info",
        "host_mdm",
        "mobile_device_management_solutions",
        "host_software",
        "software",
        "windows_updates",
        "host_device_auth",
        "host_disks",
        "host_batteries",
        "host_emails",
        "host_users",
        "host_additional",
        "host_seen_times",
        "hosts",
        "teams",
    ):
        op.drop_table(table)
