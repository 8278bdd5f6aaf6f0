"""
Structured, catchable error conditions raised by the Rexa core.

Every condition carries enough context (line, function, domain) for the
program's own `SIGNAL ON ERROR` trap and for the invoking collaborator.
"""
from typing import Any, Optional, List


class RexaError(Exception):
    """Base class for all language-level conditions."""

    def __init__(self, message: str, *, line: Optional[int] = None, col: Optional[int] = None,
                 function: Optional[str] = None, domain: Optional[str] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.col = col
        self.function = function
        self.domain = domain
        self.payload = payload

    @property
    def kind(self) -> str:
        return type(self).__name__

    def with_context(self, *, line: Optional[int] = None, function: Optional[str] = None,
                     domain: Optional[str] = None) -> 'RexaError':
        """Fill in missing location details; the innermost value always wins."""
        if self.line is None and line is not None:
            self.line = line
        if self.function is None and function is not None:
            self.function = function
        if self.domain is None and domain is not None:
            self.domain = domain
        return self

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "line": self.line,
            "col": self.col,
            "function": self.function,
            "domain": self.domain,
        }

    def __str__(self) -> str:
        return self.message


class ParseError(RexaError):
    pass


class EvaluationError(RexaError):
    pass


class TypeCoercionError(EvaluationError):
    pass


class ArgumentBindingError(EvaluationError):
    pass


class MissingArgumentError(EvaluationError):
    pass


class UnknownFunctionError(RexaError):
    pass


class AddressHandlerError(RexaError):
    """A handler reported failure, raised, or timed out. `payload` holds its original error."""
    pass


class ModuleLoadError(RexaError):
    def __init__(self, message: str, *, identifier: Optional[str] = None,
                 cause: Optional[BaseException] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.identifier = identifier
        self.cause = cause


class CircularDependencyError(ModuleLoadError):
    def __init__(self, cycle: List[str], **kwargs):
        path = " -> ".join(cycle)
        super().__init__(f"Circular dependency: {path}", identifier=cycle[0] if cycle else None, **kwargs)
        self.cycle = list(cycle)


class DuplicatePatternNameError(RexaError):
    pass


class InvalidDelimiterError(RexaError):
    pass


class CancellationError(RexaError):
    pass


__all__ = [
    "RexaError",
    "ParseError",
    "EvaluationError",
    "TypeCoercionError",
    "ArgumentBindingError",
    "MissingArgumentError",
    "UnknownFunctionError",
    "AddressHandlerError",
    "ModuleLoadError",
    "CircularDependencyError",
    "DuplicatePatternNameError",
    "InvalidDelimiterError",
    "CancellationError",
]
