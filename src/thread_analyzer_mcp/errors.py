from typing import Optional


class IllegalRuntimeStateError(Exception):
    """Thread dump or thread state that can not be turned into a consistent runtime."""

    def __init__(self, message: str, chunk: Optional[str] = None):
        if chunk is not None:
            message = f"{message} >>>\n{chunk}\n<<<"
        super().__init__(message)
        self.chunk = chunk


class MalformedChunkError(IllegalRuntimeStateError):
    """Top-level chunk that is neither a thread, a header nor a known trailer."""


class StructuralParseError(IllegalRuntimeStateError):
    """Thread chunk declaring something a single thread can not be in."""


class InvariantViolationError(IllegalRuntimeStateError):
    """Thread whose status contradicts the locks it waits for."""


class EmptyDumpError(IllegalRuntimeStateError):
    """Nothing that looks like a thread was found."""
