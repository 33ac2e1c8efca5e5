from __future__ import annotations


class CoursetallyError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class AuthRequired(CoursetallyError):
    """No credential, or the provider rejected it (HTTP 401/403)."""


class ProviderError(CoursetallyError, RuntimeError):
    def __init__(self, source: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class ValidationError(CoursetallyError, ValueError):
    """Malformed request, rejected before any store mutation."""


class OrphanReference(CoursetallyError):
    def __init__(self, ref: object, title: str = "") -> None:
        super().__init__(f"categorization points to missing event {ref} ({title})")
        self.ref = ref
        self.title = title


class SubmissionError(CoursetallyError):
    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        self.code = code
