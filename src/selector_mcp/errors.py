"""Typed failures raised by the matcher, snapshot provider and resolver."""

from typing import Optional


class SelectorError(Exception):
    """Base class for every selector lookup failure."""

    error_type = "selector_error"


class InputError(SelectorError, ValueError):
    """The prompt was empty or whitespace-only."""

    error_type = "input_error"

    def __init__(self, message: str = "Prompt must be a non-empty string"):
        super().__init__(message)


class SnapshotUnavailableError(SelectorError):
    """The browser could not produce an accessibility snapshot."""

    error_type = "snapshot_unavailable"

    def __init__(self, message: str = "No elements found matching the description."):
        super().__init__(message)


class NoMatchError(SelectorError):
    """The snapshot was traversed and no node matched the prompt."""

    error_type = "no_match"

    def __init__(self, prompt: str):
        self.prompt = prompt
        super().__init__(f"No matching element found for: {prompt}")


class ResolutionError(SelectorError):
    """A ref from an earlier snapshot no longer resolves on the page."""

    error_type = "resolution_failure"

    def __init__(self, ref: str, reason: Optional[str] = None):
        self.ref = ref
        message = f"Element reference '{ref}' could not be resolved"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
