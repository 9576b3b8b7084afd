class SandboxAgentError(Exception):
    code = "internal_error"


class SandboxViolation(SandboxAgentError):
    """Path escapes the sandbox root. Never retried."""

    code = "sandbox_violation"


class NotFound(SandboxAgentError):
    code = "not_found"


class TransientIOError(SandboxAgentError):
    """Resource busy or similar; retried with a bounded delay, then fatal."""

    code = "resource_busy"


class ProtocolError(SandboxAgentError):
    """Model output could not be decoded into an AgentDecision."""

    code = "protocol_error"


class UpstreamError(SandboxAgentError):
    """An HTTP collaborator (model, embeddings, web) failed."""

    code = "upstream_error"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
