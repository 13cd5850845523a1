"""
Command pipeline.

Coordinates one operator intent through generation, the human approval gate,
remote execution with streamed progress, post-hoc analysis and the audit
record. Approval is the only way a command reaches the remote channel.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional

from ..config import get_prompt
from ..errors import (
    ApprovalRequiredError,
    CommandCancelledError,
    InvalidTransitionError,
    RemoteChannelError,
    SessionBusyError,
    SessionNotFoundError,
)
from ..events import EventStream
from ..executor import RemoteChannel
from ..history import CommandHistory, HistoryEntry
from ..orchestrator import ExecutionMode, OrchestrationResult, Orchestrator

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    GENERATING_COMMAND = "generating_command"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.REJECTED, SessionState.CANCELLED, SessionState.FAILED}
)

# Forward-only transition table
ALLOWED_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.IDLE: frozenset(
        {SessionState.GENERATING_COMMAND, SessionState.AWAITING_APPROVAL}
    ),
    SessionState.GENERATING_COMMAND: frozenset(
        {SessionState.AWAITING_APPROVAL, SessionState.FAILED}
    ),
    SessionState.AWAITING_APPROVAL: frozenset(
        {SessionState.EXECUTING, SessionState.REJECTED, SessionState.FAILED}
    ),
    SessionState.EXECUTING: frozenset(
        {SessionState.ANALYZING, SessionState.CANCELLED, SessionState.FAILED}
    ),
    SessionState.ANALYZING: frozenset({SessionState.COMPLETED, SessionState.FAILED}),
}

_FENCED_BLOCK = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)```", re.DOTALL)


def extract_command(text: str) -> str:
    """
    Reduce a model reply to bare command text.

    Markdown fences, inline backticks and a leading shell prompt are removed.
    """
    text = text.strip()
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        text = fenced.group(1).strip()
    text = text.strip("`").strip()
    if text.startswith("$ "):
        text = text[2:].lstrip()
    return text


@dataclass
class CommandSession:
    """The unit of work for one intent."""

    intent: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SessionState = SessionState.IDLE
    generated_command: Optional[str] = None
    output: Optional[str] = None
    analysis: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    models_used: List[str] = field(default_factory=list)
    consensus: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "intent": self.intent,
            "state": self.state.value,
            "generated_command": self.generated_command,
            "output": self.output,
            "analysis": self.analysis,
            "error": self.error,
            "cancelled": self.cancelled,
            "created_at": self.created_at.isoformat(),
        }


class CommandPipeline:
    def __init__(
        self,
        orchestrator: Orchestrator,
        channel: RemoteChannel,
        history: CommandHistory,
        stream_queue_size: int = 100,
        temperature: float = 0.3,
    ):
        """
        Initialize command pipeline.

        Args:
            orchestrator: Generates commands and analyses output
            channel: Remote channel commands run on
            history: Ledger completed sessions are written to
            stream_queue_size: Per-subscriber progress queue bound
            temperature: Sampling temperature for orchestrator calls
        """
        self.orchestrator = orchestrator
        self.channel = channel
        self.history = history
        self.stream_queue_size = stream_queue_size
        self.temperature = temperature
        self._sessions: Dict[str, CommandSession] = {}
        self._active: Optional[CommandSession] = None
        self._stream: Optional[EventStream] = None

    # Queries

    def get_session(self, session_id: str) -> CommandSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    @property
    def active_session(self) -> Optional[CommandSession]:
        return self._active

    def current_stream(self) -> Optional[EventStream]:
        """Event stream of the executing session, if any."""
        return self._stream

    # Transitions

    async def submit_intent(self, intent: str) -> CommandSession:
        """
        Turn an intent into a command awaiting approval.

        The session ends up in AWAITING_APPROVAL with generated_command set,
        or in FAILED with error set.
        """
        session = CommandSession(intent=intent)
        self._sessions[session.id] = session
        self._transition(session, SessionState.GENERATING_COMMAND)

        messages = [
            {"role": "system", "content": get_prompt("command")},
            {"role": "user", "content": intent},
        ]
        result = await self.orchestrator.execute_mode(
            ExecutionMode.SMART_CONSENSUS, messages, self.temperature
        )
        session.models_used = list(result.models_used)
        session.consensus = result.consensus

        command = extract_command(result.content) if not result.error else ""
        if not command:
            session.error = result.error or "Model returned an empty command"
            logger.warning(f"Command generation failed for session {session.id}: {session.error}")
            self._finish(session, SessionState.FAILED)
            return session

        session.generated_command = command
        self._transition(session, SessionState.AWAITING_APPROVAL)
        logger.info(f"Session {session.id} awaiting approval for: {command}")
        return session

    def submit_command(self, command: str) -> CommandSession:
        """Register an operator-authored command; it still needs approve()."""
        command = command.strip()
        if not command:
            raise ValueError("Command must not be empty")
        session = CommandSession(intent=command, generated_command=command)
        self._sessions[session.id] = session
        self._transition(session, SessionState.AWAITING_APPROVAL)
        return session

    async def approve(self, session_id: str) -> CommandSession:
        """
        Approve the pending command and run it to completion.

        No-op unless the session is awaiting approval with a command.

        Raises:
            SessionNotFoundError: Unknown session
            SessionBusyError: Another session is executing
        """
        session = self.get_session(session_id)
        if session.state is not SessionState.AWAITING_APPROVAL or not session.generated_command:
            return session

        if self._active is not None:
            raise SessionBusyError(f"Session {self._active.id} is already executing")

        self._active = session
        self._stream = EventStream(session.id, maxsize=self.stream_queue_size)
        self._transition(session, SessionState.EXECUTING)
        logger.info(f"Session {session.id} approved")

        try:
            await self.execute(session.id)
        finally:
            if self._stream is not None and not self._stream.closed:
                self._stream.close(status=session.state.value)
            self._stream = None
            self._active = None
        return session

    def reject(self, session_id: str) -> CommandSession:
        session = self.get_session(session_id)
        if session.state is not SessionState.AWAITING_APPROVAL:
            raise InvalidTransitionError(
                f"Cannot reject session in state {session.state.value}"
            )
        session.generated_command = None
        self._finish(session, SessionState.REJECTED)
        logger.info(f"Session {session.id} rejected")
        return session

    async def cancel(self, session_id: Optional[str] = None) -> bool:
        """
        Abort the executing session.

        Returns:
            True if a running command was cancelled; False if nothing was
            executing, session_id does not match, or the process had already
            exited
        """
        session = self._active
        if session is None or session.state is not SessionState.EXECUTING:
            return False
        if session_id is not None and session.id != session_id:
            return False

        if not await self.channel.cancel_current():
            return False

        session.cancelled = True
        self._transition(session, SessionState.CANCELLED)
        if self._stream is not None:
            self._stream.close(status=SessionState.CANCELLED.value, discard_pending=True)
        logger.info(f"Session {session.id} cancelled")
        return True

    async def execute(self, session_id: str) -> CommandSession:
        """
        Run the approved command of an executing session, then analyse it.

        Raises:
            ApprovalRequiredError: The session did not pass through approve()
        """
        session = self.get_session(session_id)
        if session.state is not SessionState.EXECUTING or session is not self._active:
            raise ApprovalRequiredError(
                f"Session {session_id} is {session.state.value}; approve it before execution"
            )

        stream = self._stream
        stream.publish(f"Executing: {session.generated_command}")

        try:
            output = await self.channel.execute(session.generated_command, progress=stream)
        except CommandCancelledError:
            if session.state is SessionState.EXECUTING:
                session.cancelled = True
                self._transition(session, SessionState.CANCELLED)
                stream.close(status=SessionState.CANCELLED.value, discard_pending=True)
            self._finish(session, session.state)
            return session
        except RemoteChannelError as e:
            logger.error(f"Remote execution failed for session {session.id}: {e}")
            output = f"SSH Error: {e}"

        if session.state is SessionState.CANCELLED:
            # cancel() won the race after the process produced its output
            self._finish(session, session.state)
            return session

        session.output = output
        self._transition(session, SessionState.ANALYZING)
        stream.close(status=SessionState.COMPLETED.value)

        await self._analyze(session)
        return session

    async def _analyze(self, session: CommandSession) -> None:
        messages = [
            {"role": "system", "content": get_prompt("analysis")},
            {
                "role": "user",
                "content": (
                    f"Command executed: {session.generated_command}\n\n"
                    f"Output:\n{session.output}\n\n"
                    "Please analyze this output and provide security insights."
                ),
            },
        ]
        result: OrchestrationResult = await self.orchestrator.execute_mode(
            ExecutionMode.SMART_CONSENSUS, messages, self.temperature
        )
        session.models_used = list(result.models_used)
        session.consensus = result.consensus

        if result.error:
            # Output is kept even when analysis fails
            logger.warning(f"Analysis failed for session {session.id}: {result.error}")
            session.analysis = f"Analysis unavailable: {result.error}"
        else:
            session.analysis = result.content

        self._finish(session, SessionState.COMPLETED)
        self.history.append(
            HistoryEntry(
                timestamp=datetime.now(UTC),
                intent=session.intent,
                generated_command=session.generated_command,
                output=session.output,
                analysis=session.analysis,
            )
        )

    def _transition(self, session: CommandSession, new_state: SessionState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(session.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"Session {session.id}: {session.state.value} -> {new_state.value} is not allowed"
            )
        logger.debug(f"Session {session.id}: {session.state.value} -> {new_state.value}")
        session.state = new_state

    def _finish(self, session: CommandSession, terminal: SessionState) -> None:
        """Move to a terminal state and forget the session."""
        if session.state is not terminal:
            self._transition(session, terminal)
        self._sessions.pop(session.id, None)
