"""
KaliSSH HTTP data models.

These models define the structure of all data crossing the HTTP boundary.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# Enums


class ChatMode(str, Enum):
    """How a chat message is handled."""

    CHAT = "chat"
    SSH = "ssh"
    SSH_INTENT = "ssh_intent"


class ModelStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


# Request Models (API Input)


class ChatRequest(BaseModel):
    """Operator message."""

    message: str = Field(..., description="Chat text, shell command or intent", max_length=8000)
    mode: ChatMode = Field(default=ChatMode.CHAT, description="Handling mode")

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v


# Response Models (API Output)


class ChatMetadata(BaseModel):
    mode: str
    models_used: List[str] = Field(default_factory=list)
    consensus: bool = False
    response_time_seconds: float
    ssh_executed: Optional[bool] = None
    command_output: Optional[str] = None
    generated_commands: Optional[List[str]] = None
    session_id: Optional[str] = None
    session_state: Optional[str] = None
    from_cache: Optional[bool] = None
    error: Optional[str] = None


class ChatResponse(BaseModel):
    response: str
    metadata: ChatMetadata


class AIModelInfo(BaseModel):
    """Registry entry with live statistics."""

    id: str
    name: str
    model_id: str
    role: str
    status: ModelStatus
    avg_response_time: float = Field(..., description="Mean latency in seconds")
    success_rate: float = Field(..., description="Successful calls in percent", ge=0, le=100)


class SSHStatusResponse(BaseModel):
    connected: bool
    host: str
    user: str
    latency_ms: Optional[float] = None
    last_connected: Optional[datetime] = None


class SessionResponse(BaseModel):
    session_id: str
    intent: str
    state: str
    generated_command: Optional[str] = None
    output: Optional[str] = None
    analysis: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    created_at: datetime


class CancelResponse(BaseModel):
    cancelled: bool


class HistoryEntryResponse(BaseModel):
    timestamp: datetime
    intent: str
    generated_command: str
    output: str
    analysis: str
