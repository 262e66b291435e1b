"""Exceptions raised by scopelift."""


class ScopeliftError(Exception):
    """Base error for analysis, instrumentation and reflection."""


class AnalysisError(ScopeliftError):
    """Malformed input tree, with location info when known."""

    def __init__(self, msg: str, lineno: int = 0, col: int = 0):
        self.msg: str = msg
        self.lineno: int = lineno
        self.col: int = col
        if lineno:
            super().__init__(f"{msg} at line {lineno} col {col}")
        else:
            super().__init__(msg)


class NotInstrumented(ScopeliftError):
    """The function carries no reflection hook; treat it as opaque."""


class IncompatibleScopeShape(ScopeliftError):
    """A scope's fields do not fit the free names of the tree being lifted."""


class SerializationError(ScopeliftError):
    """A closure cannot be written out, or a persisted record is malformed."""
