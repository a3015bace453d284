# models/upload_models.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    WAITING = "waiting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    EXPIRED = "expired"


class FileRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_name: str
    mime_type: str
    size_bytes: int
    uploaded_at: datetime
    storage_ref: str
    checksum: Optional[str] = None


class Session(BaseModel):
    token: str
    status: SessionStatus = SessionStatus.WAITING
    files: List[FileRecord] = []
    total_bytes: int = 0
    created_at: datetime
    expires_at: datetime
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.status == SessionStatus.EXPIRED or now > self.expires_at

    def add_file(self, record: FileRecord):
        self.files.append(record)
        self.total_bytes += record.size_bytes


class InFlightUpload(BaseModel):
    upload_id: str
    session_token: str
    session_expires_at: datetime
    file_name: str
    declared_size: int
    mime_type: str
    chunks: Dict[int, bytes] = {}
    created_at: datetime
    last_activity_at: datetime

    @property
    def bytes_received(self) -> int:
        # Computed from the chunk map so retransmitted indices count once
        return sum(len(chunk) for chunk in self.chunks.values())

    @property
    def progress_percent(self) -> int:
        if self.declared_size <= 0:
            return 100 if self.chunks else 0
        percent = round(self.bytes_received / self.declared_size * 100)
        return max(0, min(100, percent))

    def missing_indices(self) -> List[int]:
        if not self.chunks:
            return [0]
        return [i for i in range(max(self.chunks) + 1) if i not in self.chunks]

    def assemble(self) -> bytes:
        return b"".join(self.chunks[i] for i in sorted(self.chunks))


class UploadTicket(BaseModel):
    upload_id: str
    recommended_chunk_size: int
    max_chunk_size: int


class ChunkProgress(BaseModel):
    upload_id: str
    chunk_index: int
    percent: int
    bytes_received: int
    total_bytes: int


class StoredObject(BaseModel):
    storage_ref: str
    actual_size: int
    checksum: str
    url: Optional[str] = None


class CreatedSession(BaseModel):
    session: Session
    upload_url: str
    qr_code: str


# Request bodies accepted by the HTTP layer

class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expiry_minutes: Optional[int] = Field(None, alias="expiryMinutes")


class UploadInitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1)
    file_name: str = Field(..., alias="fileName", min_length=1, max_length=255)
    size: int
    mime_type: str = Field(..., alias="mimeType", min_length=1, max_length=100)


class UploadRefRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(..., alias="uploadId", min_length=1)
    session_id: Optional[str] = Field(None, alias="sessionId")
