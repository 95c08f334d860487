"""Project-specific exception types."""

from __future__ import annotations


class CIVMError(RuntimeError):
    """Base error for sequencer-level failures."""


class PreconditionError(CIVMError):
    """A required local file is absent; nothing was attempted."""


class DuplicateDomainError(CIVMError):
    """A domain with the requested name is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"VM '{name}' already exists. Use `civm teardown` first."
        )


class StepFailedError(CIVMError):
    """An external tool failed while running a named pipeline step."""

    def __init__(self, step: str, error: Exception):
        self.step = step
        self.error = error
        super().__init__(f'{step}: {error}')
