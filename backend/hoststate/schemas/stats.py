from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class ScheduledQueryStats(BaseModel):
    """Execution metrics of one scheduled query on one host."""
    scheduled_query_name: str
    scheduled_query_id: Optional[int] = None
    query_name: str = ""
    description: str = ""
    pack_name: str = ""
    pack_id: Optional[int] = None
    average_memory: int = 0
    denylisted: bool = False
    executions: int = 0
    interval: int = 0
    last_executed: datetime
    output_size: int = 0
    system_time: int = 0
    user_time: int = 0
    wall_time: int = 0


class PackStats(BaseModel):
    pack_id: Optional[int] = None
    pack_name: str
    query_stats: List[ScheduledQueryStats] = []
