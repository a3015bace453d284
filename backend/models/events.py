# models/events.py
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.upload_models import FileRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransferEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_token: str
    timestamp: datetime = Field(default_factory=_utcnow)


class UploadStarted(TransferEvent):
    type: Literal["uploadStarted"] = "uploadStarted"
    upload_id: str
    file_name: str
    size: int


class UploadProgress(TransferEvent):
    type: Literal["uploadProgress"] = "uploadProgress"
    upload_id: str
    percent: int
    bytes_received: int
    total_bytes: int


class UploadComplete(TransferEvent):
    type: Literal["uploadComplete"] = "uploadComplete"
    upload_id: str
    file: FileRecord


class UploadError(TransferEvent):
    type: Literal["uploadError"] = "uploadError"
    upload_id: str
    reason: str


class SessionCompleted(TransferEvent):
    type: Literal["sessionCompleted"] = "sessionCompleted"
    total_files: int
    total_bytes: int


Event = Annotated[
    Union[UploadStarted, UploadProgress, UploadComplete, UploadError, SessionCompleted],
    Field(discriminator="type"),
]
