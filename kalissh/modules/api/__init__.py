"""
API Module - Black Box Interface

Purpose: HTTP request/response contracts
Interface: Pydantic models used by the FastAPI routes
Hidden: Field validation rules

The API layer only orchestrates - it contains no business logic.
All logic is delegated to the appropriate modules.
"""

from .models import (
    AIModelInfo,
    CancelResponse,
    ChatMetadata,
    ChatMode,
    ChatRequest,
    ChatResponse,
    HistoryEntryResponse,
    ModelStatus,
    SessionResponse,
    SSHStatusResponse,
)

__all__ = [
    "AIModelInfo",
    "CancelResponse",
    "ChatMetadata",
    "ChatMode",
    "ChatRequest",
    "ChatResponse",
    "HistoryEntryResponse",
    "ModelStatus",
    "SessionResponse",
    "SSHStatusResponse",
]
