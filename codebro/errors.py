"""Exception types shared across the agent."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class TransportError(AgentError):
    """Raised when the chat-completion request fails. Fatal to the current turn."""

    def __init__(self, model: str, message: str):
        self.model = model
        super().__init__(f"model {model!r} request failed: {message}")
