"""Exceptions raised by the onboarding core."""

from __future__ import annotations


class OnboardingError(Exception):
    """Base class for onboarding errors."""


class ResourceAPIError(OnboardingError):
    """A Resource API call failed (transport error or non-2xx response)."""

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class InvalidIdentifierError(ResourceAPIError):
    """The API answered but returned no usable identifier."""


class UnsupportedMediaTypeError(OnboardingError):
    """Attachment mime type is outside the allow-list."""


class AttachmentLimitError(OnboardingError):
    """Attachment count or size limit exceeded."""


class FinalizationInProgressError(OnboardingError):
    """A finalization attempt is already running for this draft."""


class FatalStageError(OnboardingError):
    """A fatal stage failed; the attempt stops here."""

    def __init__(self, stage: str, detail: str):
        super().__init__(f"{stage}: {detail}")
        self.stage = stage
        self.detail = detail


class SnapshotError(OnboardingError):
    """A snapshot could not be read or written."""
