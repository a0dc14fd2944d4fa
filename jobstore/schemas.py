"""Pydantic schemas for records passed to and returned by the storage connection."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from requests.structures import CaseInsensitiveDict

from jobstore.common import Job
from jobstore.errors import JobLoadError


class JobData(BaseModel):
    """A stored job as read back; job is None when it failed to load."""
    job: Optional[Job] = None
    state: Optional[str] = None
    created_at: datetime
    load_exception: Optional[JobLoadError] = None

    class Config:
        arbitrary_types_allowed = True


class StateData(BaseModel):
    """Current state of a job; data keys compare case-insensitively."""
    name: str
    reason: Optional[str] = None
    data: CaseInsensitiveDict = Field(default_factory=CaseInsensitiveDict)

    class Config:
        arbitrary_types_allowed = True


class State(BaseModel):
    """A state to be applied to a job by a write transaction."""
    name: str = Field(..., max_length=20, description="State name")
    reason: Optional[str] = Field(default=None, max_length=100)
    data: Dict[str, str] = Field(default_factory=dict)


class ServerContext(BaseModel):
    """What a server announces about itself."""
    worker_count: int = Field(..., ge=0)
    queues: List[str] = Field(default_factory=list)


class ServerData(BaseModel):
    """Stored data blob of a server record."""
    worker_count: int
    queues: List[str]
    started_at: datetime
