"""SQLAlchemy ORM models for the host state store.

The ``hosts`` table is the canonical host entity. Per-host satellite
tables are keyed by ``host_id`` without a foreign key; deleting a host
removes their rows explicitly (see ``HOST_REFS``).
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .engine import Base
from .sql import UTCDateTime, utcnow


def _utcnow() -> datetime:
    return utcnow()


# ── Teams ──────────────────────────────────────────────────────────────


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(1023), default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


# ── Hosts ──────────────────────────────────────────────────────────────


class Host(Base):
    __tablename__ = "hosts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    osquery_host_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    node_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    uuid: Mapped[str] = mapped_column(String(255), default="")
    hostname: Mapped[str] = mapped_column(String(255), default="")
    computer_name: Mapped[str] = mapped_column(String(255), default="")
    platform: Mapped[str] = mapped_column(String(255), default="")
    platform_like: Mapped[str] = mapped_column(String(255), default="")
    osquery_version: Mapped[str] = mapped_column(String(255), default="")
    os_version: Mapped[str] = mapped_column(String(255), default="")
    uptime: Mapped[int] = mapped_column(BigInteger, default=0)
    memory: Mapped[int] = mapped_column(BigInteger, default=0)
    cpu_type: Mapped[str] = mapped_column(String(255), default="")
    cpu_brand: Mapped[str] = mapped_column(String(255), default="")
    cpu_physical_cores: Mapped[int] = mapped_column(Integer, default=0)
    cpu_logical_cores: Mapped[int] = mapped_column(Integer, default=0)
    hardware_vendor: Mapped[str] = mapped_column(String(255), default="")
    hardware_model: Mapped[str] = mapped_column(String(255), default="")
    hardware_serial: Mapped[str] = mapped_column(String(255), default="")
    primary_ip: Mapped[str] = mapped_column(String(45), default="")
    primary_mac: Mapped[str] = mapped_column(String(17), default="")
    public_ip: Mapped[str] = mapped_column(String(45), default="")

    detail_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    label_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    policy_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    last_enrolled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow
    )

    distributed_interval: Mapped[int] = mapped_column(Integer, default=0)
    logger_tls_period: Mapped[int] = mapped_column(Integer, default=0)
    config_tls_refresh: Mapped[int] = mapped_column(Integer, default=0)
    refetch_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    team_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("teams.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("ix_hosts_team", "team_id"),
        Index("ix_hosts_platform", "platform"),
        Index("ix_hosts_hostname", "hostname"),
    )


class HostSeenTime(Base):
    """Last check-in, kept apart from ``hosts`` so pings don't contend with detail writes."""
    __tablename__ = "host_seen_times"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    seen_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_host_seen_times_seen_time", "seen_time"),
    )


class HostAdditional(Base):
    __tablename__ = "host_additional"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    additional: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class HostUser(Base):
    __tablename__ = "host_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(Integer, nullable=False)
    uid: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    username: Mapped[str] = mapped_column(String(255), default="")
    user_type: Mapped[str] = mapped_column(String(255), default="")
    groupname: Mapped[str] = mapped_column(String(255), default="")
    shell: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_host_users_host", "host_id"),
    )


class HostDeviceMapping(Base):
    __tablename__ = "host_emails"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(Integer, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("host_id", "email", "source", name="uq_host_emails_host_email_source"),
        Index("ix_host_emails_email", "email"),
    )


class HostBattery(Base):
    __tablename__ = "host_batteries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(Integer, nullable=False)
    serial_number: Mapped[str] = mapped_column(String(255), nullable=False)
    cycle_count: Mapped[int] = mapped_column(Integer, default=0)
    health: Mapped[str] = mapped_column(String(40), default="")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("host_id", "serial_number", name="uq_host_batteries_host_serial"),
    )


class HostDisk(Base):
    __tablename__ = "host_disks"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gigs_disk_space_available: Mapped[float] = mapped_column(Float, default=0.0)
    percent_disk_space_available: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_host_disks_gigs", "gigs_disk_space_available"),
    )


class HostDeviceAuth(Base):
    __tablename__ = "host_device_auth"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class WindowsUpdate(Base):
    __tablename__ = "windows_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date_epoch: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kb_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("host_id", "kb_id", name="uq_windows_updates_host_kb"),
    )


# ── Software ───────────────────────────────────────────────────────────


class Software(Base):
    __tablename__ = "software"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), default="")
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    bundle_identifier: Mapped[str] = mapped_column(String(255), default="")

    __table_args__ = (
        UniqueConstraint("name", "version", "source", name="uq_software_name_version_source"),
    )


class HostSoftware(Base):
    __tablename__ = "host_software"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    software_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("software.id", ondelete="CASCADE"), primary_key=True
    )

    __table_args__ = (
        Index("ix_host_software_software", "software_id"),
    )


# ── MDM / Munki ────────────────────────────────────────────────────────


class MDMSolution(Base):
    __tablename__ = "mobile_device_management_solutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    server_url: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", "server_url", name="uq_mdm_solutions_name_url"),
    )


class HostMDM(Base):
    __tablename__ = "host_mdm"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    enrolled: Mapped[bool] = mapped_column(Boolean, default=False)
    server_url: Mapped[str] = mapped_column(String(255), default="")
    installed_from_dep: Mapped[bool] = mapped_column(Boolean, default=False)
    mdm_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("mobile_device_management_solutions.id"), nullable=True
    )

    __table_args__ = (
        Index("ix_host_mdm_mdm_id", "mdm_id"),
    )


class HostMunkiInfo(Base):
    __tablename__ = "host_munki_info"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class MunkiIssue(Base):
    __tablename__ = "munki_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    issue_type: Mapped[str] = mapped_column(String(10), nullable=False)  # error | warning
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", "issue_type", name="uq_munki_issues_name_type"),
    )


class HostMunkiIssue(Base):
    __tablename__ = "host_munki_issues"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    munki_issue_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("munki_issues.id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_host_munki_issues_issue", "munki_issue_id"),
    )


# ── Operating systems ──────────────────────────────────────────────────


class OperatingSystem(Base):
    __tablename__ = "operating_systems"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(150), nullable=False)
    arch: Mapped[str] = mapped_column(String(150), default="")
    kernel_version: Mapped[str] = mapped_column(String(150), default="")
    platform: Mapped[str] = mapped_column(String(50), default="")

    __table_args__ = (
        UniqueConstraint(
            "name", "version", "arch", "kernel_version", "platform",
            name="uq_operating_systems_identity",
        ),
    )


class HostOperatingSystem(Base):
    __tablename__ = "host_operating_system"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    os_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("operating_systems.id"), nullable=False
    )

    __table_args__ = (
        Index("ix_host_operating_system_os", "os_id"),
    )


# ── Labels ─────────────────────────────────────────────────────────────


class Label(Base):
    __tablename__ = "labels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    query: Mapped[str] = mapped_column(Text, default="")
    platform: Mapped[str] = mapped_column(String(255), default="")
    label_type: Mapped[str] = mapped_column(String(16), default="regular")  # regular | builtin
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class LabelMembership(Base):
    __tablename__ = "label_membership"

    label_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True
    )
    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_label_membership_host", "host_id"),
    )


# ── Packs & scheduled queries ──────────────────────────────────────────


class Query(Base):
    __tablename__ = "queries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    query: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Pack(Base):
    __tablename__ = "packs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    platform: Mapped[str] = mapped_column(String(255), default="")
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    pack_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # global | team-<id> | NULL
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class PackTarget(Base):
    __tablename__ = "pack_targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pack_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("packs.id", ondelete="CASCADE"), nullable=False
    )
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)  # label | host | team
    target_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("pack_id", "target_type", "target_id", name="uq_pack_targets"),
        Index("ix_pack_targets_target", "target_type", "target_id"),
    )


class ScheduledQuery(Base):
    __tablename__ = "scheduled_queries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pack_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("packs.id", ondelete="CASCADE"), nullable=False
    )
    query_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("queries.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, default=0)
    snapshot: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    removed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, default="")
    version: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, default="")
    shard: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    denylist: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("pack_id", "name", name="uq_scheduled_queries_pack_name"),
    )


class ScheduledQueryStats(Base):
    __tablename__ = "scheduled_query_stats"

    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheduled_query_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scheduled_queries.id", ondelete="CASCADE"), primary_key=True
    )
    average_memory: Mapped[int] = mapped_column(BigInteger, default=0)
    denylisted: Mapped[bool] = mapped_column(Boolean, default=False)
    executions: Mapped[int] = mapped_column(BigInteger, default=0)
    schedule_interval: Mapped[int] = mapped_column(Integer, default=0)
    last_executed: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    output_size: Mapped[int] = mapped_column(BigInteger, default=0)
    system_time: Mapped[int] = mapped_column(BigInteger, default=0)
    user_time: Mapped[int] = mapped_column(BigInteger, default=0)
    wall_time: Mapped[int] = mapped_column(BigInteger, default=0)


# ── Policies ───────────────────────────────────────────────────────────


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    resolution: Mapped[str] = mapped_column(Text, default="")
    platforms: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", "name", name="uq_policies_team_name"),
    )


class PolicyMembership(Base):
    __tablename__ = "policy_membership"

    policy_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True
    )
    host_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    passes: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_policy_membership_host_passes", "host_id", "passes"),
    )


# ── Aggregates & coordination ──────────────────────────────────────────


class AggregatedStats(Base):
    """Materialised rollups. ``id`` is a team id, 0 for the whole fleet."""
    __tablename__ = "aggregated_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    stats_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    json_value: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Lock(Base):
    __tablename__ = "locks"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# Tables holding per-host rows; all of them are purged when a host is deleted.
HOST_REFS = (
    HostSeenTime,
    HostAdditional,
    HostUser,
    HostSoftware,
    HostDeviceMapping,
    HostBattery,
    HostDisk,
    HostDeviceAuth,
    HostMDM,
    HostMunkiInfo,
    HostMunkiIssue,
    HostOperatingSystem,
    LabelMembership,
    PolicyMembership,
    ScheduledQueryStats,
    WindowsUpdate,
)
