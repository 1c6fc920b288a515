"""Output stream processing — decode, classify, normalize and batch agent output."""

from agentmux.stream.data_buffer import DataBufferManager
from agentmux.stream.error_patterns import AgentError, AgentErrorType
from agentmux.stream.exit import ExitHandler
from agentmux.stream.stderr import StderrHandler
from agentmux.stream.stdout import StdoutHandler

__all__ = [
    "AgentError",
    "AgentErrorType",
    "DataBufferManager",
    "ExitHandler",
    "StderrHandler",
    "StdoutHandler",
]
