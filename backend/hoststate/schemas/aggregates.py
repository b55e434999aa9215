from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PlatformCount(BaseModel):
    platform: str
    hosts_count: int


class HostSummary(BaseModel):
    """Host status counts for the hosts visible through a team filter."""
    team_id: Optional[int] = None
    totals_hosts_count: int = 0
    online_count: int = 0
    offline_count: int = 0
    mia_count: int = 0
    missing_30_days_count: int = 0
    new_count: int = 0
    all_linux_count: int = 0
    low_disk_space_count: Optional[int] = None
    platforms: List[PlatformCount] = []


class TargetMetrics(BaseModel):
    total_hosts: int = 0
    online_hosts: int = 0
    offline_hosts: int = 0
    missing_in_action_hosts: int = 0
    new_hosts: int = 0


class AggregatedMunkiVersion(BaseModel):
    version: str
    hosts_count: int


class AggregatedMunkiIssue(BaseModel):
    id: int
    name: str
    issue_type: str
    hosts_count: int


class AggregatedMDMStatus(BaseModel):
    enrolled_manual_hosts_count: int = 0
    enrolled_automated_hosts_count: int = 0
    unenrolled_hosts_count: int = 0
    hosts_count: int = 0


class AggregatedMDMSolution(BaseModel):
    id: int
    name: str
    server_url: str
    hosts_count: int


class PolicyViolationDays(BaseModel):
    actual: int = 0
    possible: int = 0
    updated_at: Optional[datetime] = None


class HostsCountByOSVersion(BaseModel):
    version: str
    num_enrolled: int = Field(serialization_alias="numEnrolled")


class StatisticsPayload(BaseModel):
    """Usage figures read by the external statistics reporter."""
    version: str = Field(serialization_alias="fleetVersion")
    num_hosts_enrolled: int = Field(serialization_alias="numHostsEnrolled")
    num_teams: int = Field(serialization_alias="numTeams")
    num_policies: int = Field(serialization_alias="numPolicies")
    num_labels: int = Field(serialization_alias="numLabels")
    num_weekly_policy_violation_days_actual: int = Field(
        serialization_alias="numWeeklyPolicyViolationDaysActual"
    )
    num_weekly_policy_violation_days_possible: int = Field(
        serialization_alias="numWeeklyPolicyViolationDaysPossible"
    )
    hosts_enrolled_by_operating_system: Dict[str, List[HostsCountByOSVersion]] = Field(
        serialization_alias="hostsEnrolledByOperatingSystem"
    )
    num_hosts_not_responding: int = Field(serialization_alias="numHostsNotResponding")
