"""Caller identity and list options.

The caller's role is resolved upstream; repositories only see the
``TeamFilter`` built from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Role(str, Enum):
    ADMIN = "admin"
    MAINTAINER = "maintainer"
    OBSERVER = "observer"


class OrderDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class MDMEnrollmentStatus(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    UNENROLLED = "unenrolled"


# ``HostListOptions.team_filter`` value selecting hosts that belong to no team.
NO_TEAM = 0


@dataclass
class UserTeam:
    team_id: int
    role: Role


@dataclass
class User:
    id: int = 0
    global_role: Optional[Role] = None
    teams: list[UserTeam] = field(default_factory=list)


@dataclass
class TeamFilter:
    user: Optional[User]
    include_observer: bool = False
    # Narrows the visible hosts to a single team the user can see.
    team_id: Optional[int] = None


@dataclass
class HostListOptions:
    page: int = 0
    per_page: int = 0  # 0 = no limit
    order_key: str = ""
    order_direction: OrderDirection = OrderDirection.ASC
    after: Optional[str] = None
    match_query: str = ""

    status_filter: Optional[str] = None
    team_filter: Optional[int] = None
    low_disk_space_filter: Optional[int] = None
    mdm_id_filter: Optional[int] = None
    mdm_enrollment_status_filter: Optional[str] = None
    munki_issue_id_filter: Optional[int] = None
    os_id_filter: Optional[int] = None
    os_name_filter: Optional[str] = None
    os_version_filter: Optional[str] = None
    software_id_filter: Optional[int] = None
    policy_id_filter: Optional[int] = None
    policy_response_filter: Optional[bool] = None
    label_id_filter: Optional[int] = None

    device_mapping: bool = False
    disk_space: bool = False
    additional_filters: Optional[list[str]] = None
    disable_failing_policies: bool = False


@dataclass
class HostTargets:
    host_ids: list[int] = field(default_factory=list)
    label_ids: list[int] = field(default_factory=list)
    team_ids: list[int] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.host_ids or self.label_ids or self.team_ids)
