from phasegate.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

__all__ = ["AgentBackend", "BackendExecutionError", "BackendTimeoutError"]
