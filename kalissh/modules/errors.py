"""
Error taxonomy shared by all KaliSSH modules.

Model failures are absorbed inside the orchestrator, remote-channel failures
are turned into textual output by the pipeline, and only configuration and
input problems reach HTTP callers as hard failures.
"""


class KaliSSHError(Exception):
    """Base class for all KaliSSH errors."""


# Model backend errors


class BackendError(KaliSSHError):
    """Model backend rejected the call or returned a malformed response."""


class ModelTimeoutError(KaliSSHError, TimeoutError):
    """A model call exceeded its configured deadline."""


class AllModelsFailedError(KaliSSHError):
    """Every model in a fan-out failed to produce usable content."""


class ValidationParseError(KaliSSHError):
    """Validator output was not a structured verdict."""


# Remote channel errors


class RemoteChannelError(KaliSSHError):
    """Base class for remote execution channel failures."""


class RemoteConnectionError(RemoteChannelError, ConnectionError):
    """The channel could not be established."""


class ExecutionError(RemoteChannelError):
    """A remote command failed."""


class ExecutionTimeoutError(ExecutionError, TimeoutError):
    """A remote command exceeded the execution deadline."""


class ChannelBusyError(ExecutionError):
    """Another command is already running on the channel."""


class CommandCancelledError(RemoteChannelError):
    """The in-flight command was cancelled by the operator."""


# Pipeline errors


class PipelineError(KaliSSHError):
    """Base class for command pipeline errors."""


class InvalidTransitionError(PipelineError):
    """A session was asked to move to a state its current state cannot reach."""


class ApprovalRequiredError(PipelineError):
    """Execution was requested for a session that was not approved."""


class SessionBusyError(PipelineError):
    """Another session is already executing."""


class SessionNotFoundError(PipelineError):
    """No pending session exists with the given identifier."""
