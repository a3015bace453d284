# services/policy.py
"""Admission checks for sessions, uploads and chunks.

Every function here is pure: it looks only at its arguments and the
configured limits, and raises the matching TransferError on violation.
"""
import math

from config import TransferLimits
from models.errors import (
    InvalidChunk, InvalidDuration, InvalidSize, MimeTypeRejected,
    QuotaExceeded, TooLarge,
)


def validate_file_size(declared_size: int, limits: TransferLimits):
    if declared_size < 1:
        raise InvalidSize(f"File size must be at least 1 byte, got {declared_size}", limit=1)
    if declared_size > limits.max_file_size_bytes:
        raise TooLarge(
            f"File size {declared_size} exceeds the {limits.max_file_size_bytes} byte limit",
            limit=limits.max_file_size_bytes,
        )


def validate_session_capacity(current_total: int, declared_size: int, limits: TransferLimits):
    if current_total + declared_size > limits.max_session_bytes:
        raise QuotaExceeded(
            f"Session total would reach {current_total + declared_size} bytes, "
            f"limit is {limits.max_session_bytes}",
            limit=limits.max_session_bytes,
        )


def validate_mime_type(mime_type: str, limits: TransferLimits):
    allowed = limits.allowed_mime_types
    if allowed is None:
        return
    if mime_type not in allowed:
        raise MimeTypeRejected(f"Mime type {mime_type!r} is not allowed", limit=list(allowed))


def validate_duration(requested_minutes: int, limits: TransferLimits):
    if requested_minutes < 1 or requested_minutes > limits.max_ttl_minutes:
        raise InvalidDuration(
            f"Duration must be between 1 and {limits.max_ttl_minutes} minutes, got {requested_minutes}",
            limit=limits.max_ttl_minutes,
        )


def clamp_duration(requested_minutes: int, limits: TransferLimits) -> int:
    """Clamp a requested session lifetime to the configured maximum"""
    effective = min(requested_minutes, limits.max_ttl_minutes)
    validate_duration(effective, limits)
    return effective


def validate_chunk(index: int, size: int, limits: TransferLimits):
    if index < 0:
        raise InvalidChunk(f"Chunk index must be non-negative, got {index}")
    if size > limits.max_chunk_size_bytes:
        raise TooLarge(
            f"Chunk of {size} bytes exceeds the {limits.max_chunk_size_bytes} byte chunk limit",
            limit=limits.max_chunk_size_bytes,
        )


def recommended_chunk_size(declared_size: int, limits: TransferLimits) -> int:
    # Advisory only; put_chunk accepts anything up to max_chunk_size_bytes
    per_chunk = math.ceil(declared_size / max(1, limits.target_chunk_count))
    return max(1, min(limits.recommended_chunk_size, per_chunk, limits.max_chunk_size_bytes))
