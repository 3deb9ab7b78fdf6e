"""
Error taxonomy for the case assistant.

Format errors are terminal for a job (a retry reproduces them). Fetch and
timeout errors are transient: the job stays in the retry-eligible set.
"""


class CaseAssistantError(Exception):
    """Base class for errors raised by the pipeline."""


class FormatError(CaseAssistantError):
    """The uploaded artifact cannot be turned into text."""


class UnsupportedFormatError(FormatError):
    """No extractor exists for the file's extension."""

    def __init__(self, extension: str = ""):
        self.extension = extension
        super().__init__(f"Unsupported file type: .{extension or 'unknown'}")


class EncryptedDocumentError(FormatError):
    """A PDF that needs a password to open."""

    def __init__(self):
        super().__init__("PDF is password-protected or encrypted.")


class BlobFetchError(CaseAssistantError):
    """The byte store returned a non-success status."""

    def __init__(self, status):
        self.status = status
        super().__init__(f"Failed to download blob ({status}).")


class StageTimeoutError(CaseAssistantError):
    """
    A bounded external operation ran past its timeout.

    The label names the stage (e.g. ``blob_fetch``, ``chunk_search``,
    ``synthesis``) so callers can choose a degraded response.
    """

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"{label} timed out")


class SchemaValidationError(CaseAssistantError):
    """Model output for a job did not match its schema."""

    def __init__(self, message: str, issues: list = None):
        self.issues = issues or []
        super().__init__(message)
