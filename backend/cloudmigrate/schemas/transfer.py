from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ProviderKind = Literal["local", "s3", "gcs"]


class EndpointRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ProviderKind
    bucket: str = Field(min_length=1, max_length=255)
    account: str | None = None
    album: str | None = None
    folder: str = ""


class TransferCredentials(BaseModel):
    source: str | None = None
    destination: str | None = None


class SelectionEntry(BaseModel):
    path: str = Field(min_length=1)
    is_folder: bool = False
    relative_path: str | None = None


class TransferItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    filename: str
    relative_path: str
    size: int | None = None


class JobParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: EndpointRef
    destination: EndpointRef
    source_credential: str | None = Field(default=None, exclude=True, repr=False)
    destination_credential: str | None = Field(default=None, exclude=True, repr=False)


class ItemTransferDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: EndpointRef
    destination: EndpointRef
    source_path: str
    filename: str
    relative_path: str
    dest_path: str
    content_type: str
    size: int | None = None
    source_credential: str | None = Field(default=None, exclude=True, repr=False)
    destination_credential: str | None = Field(default=None, exclude=True, repr=False)


class ItemTransferResult(BaseModel):
    filename: str
    source_path: str
    dest_path: str
    content_length: int = 0
    success: bool
    error_message: str | None = None


class StartJobRequest(BaseModel):
    source: EndpointRef
    destination: EndpointRef
    selection: list[SelectionEntry] = Field(min_length=1)
    credentials: TransferCredentials = Field(default_factory=TransferCredentials)


class JobInput(BaseModel):
    """Schema of ``serialized_input`` for a top-level transfer job."""

    job_type: str
    source: EndpointRef
    destination: EndpointRef
    selection: list[SelectionEntry]
    started_by: str | None = None
    restarted_from: str | None = None
    descriptors: list[ItemTransferDescriptor] = Field(default_factory=list)


class ChildJobInput(BaseModel):
    """Schema of ``serialized_input`` for a child coordination unit."""

    job_type: str
    parent_instance_id: str
    descriptors: list[ItemTransferDescriptor]


class JobOutput(BaseModel):
    results: list[ItemTransferResult] = Field(default_factory=list)
    error: str | None = None


class JobProgress(BaseModel):
    completed: int = 0
    total: int = 0
    last_file: str = ""
    error: str | None = None
