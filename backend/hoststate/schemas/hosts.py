from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, computed_field

from hoststate.schemas.stats import PackStats


# Sentinel timestamp reported for scheduled queries that never ran on a host.
PAST_DATE = datetime(2000, 1, 1, tzinfo=timezone.utc)

ONLINE_INTERVAL_BUFFER = timedelta(seconds=60)
MIA_THRESHOLD = timedelta(days=30)
NEW_HOST_AGE = timedelta(days=1)

LINUX_PLATFORMS = (
    "linux",
    "ubuntu",
    "debian",
    "rhel",
    "centos",
    "sles",
    "kali",
    "gentoo",
    "amzn",
    "pop",
    "arch",
    "linuxmint",
    "void",
    "nixos",
    "endeavouros",
    "manjaro",
    "opensuse-leap",
    "opensuse-tumbleweed",
)


class HostStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    NEW = "new"
    MIA = "mia"
    MISSING = "missing"


class HostIssues(BaseModel):
    failing_policies_count: int = 0
    total_issues_count: int = 0


class HostDeviceMapping(BaseModel):
    """Email address associated with a host, and where it was found."""
    host_id: Optional[int] = None
    email: str
    source: str

    model_config = {"from_attributes": True}


class HostUser(BaseModel):
    uid: Optional[int] = None
    username: str = ""
    type: str = ""
    groupname: str = ""
    shell: str = ""


class HostBattery(BaseModel):
    host_id: int
    serial_number: str
    cycle_count: int = 0
    health: str = ""

    model_config = {"from_attributes": True}


class Software(BaseModel):
    id: Optional[int] = None
    name: str
    version: str = ""
    source: str
    bundle_identifier: str = ""

    model_config = {"from_attributes": True}


class HostMDM(BaseModel):
    host_id: int
    enrolled: bool
    server_url: str
    installed_from_dep: bool
    mdm_id: Optional[int] = None
    name: str = ""


class MDMSolution(BaseModel):
    id: int
    name: str
    server_url: str

    model_config = {"from_attributes": True}


class MunkiIssue(BaseModel):
    id: int
    name: str
    issue_type: str

    model_config = {"from_attributes": True}


class HostMunkiIssue(BaseModel):
    munki_issue_id: int
    name: str
    issue_type: str
    host_issue_created_at: datetime


class OperatingSystem(BaseModel):
    id: Optional[int] = None
    name: str
    version: str
    arch: str = ""
    kernel_version: str = ""
    platform: str = ""

    model_config = {"from_attributes": True}


class HostRead(BaseModel):
    """Host record as returned by list, search and lookup paths."""
    id: int
    osquery_host_id: Optional[str] = None
    node_key: Optional[str] = None
    uuid: str = ""
    hostname: str = ""
    computer_name: str = ""
    platform: str = ""
    platform_like: str = ""
    osquery_version: str = ""
    os_version: str = ""
    uptime: int = 0
    memory: int = 0
    cpu_type: str = ""
    cpu_brand: str = ""
    cpu_physical_cores: int = 0
    cpu_logical_cores: int = 0
    hardware_vendor: str = ""
    hardware_model: str = ""
    hardware_serial: str = ""
    primary_ip: str = ""
    primary_mac: str = ""
    public_ip: str = ""

    detail_updated_at: Optional[datetime] = None
    label_updated_at: Optional[datetime] = None
    policy_updated_at: Optional[datetime] = None
    last_enrolled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    seen_time: Optional[datetime] = None

    distributed_interval: int = 0
    logger_tls_period: int = 0
    config_tls_refresh: int = 0
    refetch_requested: bool = False

    team_id: Optional[int] = None
    team_name: Optional[str] = None

    gigs_disk_space_available: Optional[float] = None
    percent_disk_space_available: Optional[float] = None
    issues: HostIssues = HostIssues()
    device_mapping: Optional[List[HostDeviceMapping]] = None
    additional: Optional[dict[str, Any]] = None

    model_config = {"from_attributes": True}

    @computed_field  # type: ignore[misc]
    @property
    def display_name(self) -> str:
        return self.computer_name or self.hostname

    def status(self, now: datetime) -> HostStatus:
        """Online/offline/MIA from the effective seen time, same rules as the SQL filters."""
        seen = self.seen_time or self.created_at
        if seen is None:
            return HostStatus.OFFLINE
        if seen + MIA_THRESHOLD <= now:
            return HostStatus.MIA
        interval = max(self.distributed_interval, self.config_tls_refresh)
        if seen + timedelta(seconds=interval) + ONLINE_INTERVAL_BUFFER > now:
            return HostStatus.ONLINE
        return HostStatus.OFFLINE

    def is_new(self, now: datetime) -> bool:
        return self.created_at is not None and self.created_at + NEW_HOST_AGE >= now


class HostDetail(HostRead):
    """Full host record with its joined satellite data."""
    users: List[HostUser] = []
    pack_stats: List[PackStats] = []
    software_count: int = 0
    batteries: List[HostBattery] = []
    mdm: Optional[HostMDM] = None
    munki_version: Optional[str] = None


class OSVersion(BaseModel):
    hosts_count: int
    name: str
    name_only: str
    version: str
    platform: str


class OSVersions(BaseModel):
    counts_updated_at: Optional[datetime] = None
    os_versions: List[OSVersion] = []

