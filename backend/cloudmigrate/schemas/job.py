from datetime import datetime

from pydantic import BaseModel, Field

from cloudmigrate.schemas.transfer import TransferCredentials


class JobRecordOut(BaseModel):
    instance_id: str
    name: str
    status: str
    created_at: datetime
    last_updated_at: datetime
    serialized_input: str
    serialized_output: str | None
    serialized_custom_status: str | None
    parent_instance_id: str | None
    has_failed_items: bool = False


class JobListOut(BaseModel):
    instances: list[JobRecordOut]
    continuation_token: str | None = None


class JobGroupOut(BaseModel):
    parent: JobRecordOut
    children: list[JobRecordOut] = Field(default_factory=list)


class JobGroupListOut(BaseModel):
    groups: list[JobGroupOut]
    continuation_token: str | None = None


class StartJobOut(BaseModel):
    instance_id: str
    status_query_uri: str
    terminate_uri: str
    purge_uri: str
    restart_uri: str


class PurgeOut(BaseModel):
    instance_id: str
    purged: bool


class TerminateIn(BaseModel):
    reason: str = Field(default="", max_length=500)


class TerminateOut(BaseModel):
    instance_id: str
    terminated: bool


class RestartIn(BaseModel):
    credentials: TransferCredentials = Field(default_factory=TransferCredentials)


class RestartOut(BaseModel):
    instance_id: str
    restarted_from: str
