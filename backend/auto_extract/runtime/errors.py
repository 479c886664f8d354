class LocalRuntimeError(RuntimeError):
    """Raised when the local completion server cannot start or answer."""
