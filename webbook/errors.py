"""Error taxonomy for the fetch-and-extract pipeline.

Stage-level errors (template, network, script, no-content) abort the stage
call that raised them and reach the caller as the task's exception.
ExtractionFieldError is field-level: extractors catch it, trace it and leave
the field empty.
"""
from typing import Optional


class WebBookError(Exception):
    """Base class for pipeline errors."""

    kind = "error"

    def __init__(self, message: str, *, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def __str__(self):
        if self.url:
            return f"{self.message} ({self.url})"
        return self.message


class TemplateError(WebBookError):
    """A request template or rule could not be resolved."""

    kind = "template"


class NetworkError(WebBookError):
    """Connection failure, timeout or non-success HTTP status."""

    kind = "network"

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: int = 0):
        super().__init__(message, url=url)
        self.status_code = status_code


class ScriptError(WebBookError):
    """A user script raised, exited non-zero or ran out of time."""

    kind = "script"


class NoContentError(WebBookError):
    """A required extraction regex found no match."""

    kind = "no_content"


class ExtractionFieldError(WebBookError):
    """A single rule failed to resolve. Never fatal for a stage."""

    kind = "field"

    def __init__(self, message: str, *, field: str = "", rule: str = ""):
        super().__init__(message)
        self.field = field
        self.rule = rule
