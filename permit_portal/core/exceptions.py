"""
Sync-core exception hierarchy.

Every failure the persistence/synchronisation core reports to its callers is
a ``ProjectPersistenceError``. It carries a human-readable message and, when
the failure came from a store, the HTTP status and the parsed backend detail.

Subclasses narrow the kind without changing the contract, so callers that
only care about "the save failed" catch the base class, and blueprints map
the narrower kinds to specific HTTP status codes once.

Usage:
    from permit_portal.core.exceptions import ProjectPersistenceError

    raise ProjectPersistenceError("Failed to load case events", status=500, detail="boom")
"""

from __future__ import annotations


class ProjectPersistenceError(Exception):
    """Raised when a store read/write, or the validation guarding it, fails.

    Args:
        message: Human-readable explanation, already including status/detail
                 context when built by ``from_response``.
        status: HTTP status returned by the store, if any.
        detail: Backend error detail (``message`` field of the JSON error
                body, or the raw body text), if any.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        detail: str | None = None,
    ) -> None:
        self.message = message
        self.status = status
        self.detail = detail
        super().__init__(message)

    @classmethod
    def from_failure(
        cls,
        context: str,
        status: int | None,
        detail: str | None,
    ) -> "ProjectPersistenceError":
        """Build ``"<context> (<status>): <detail>"`` (or ``"<context> (<status>)."``)."""
        if detail:
            message = f"{context} ({status}): {detail}"
        else:
            message = f"{context} ({status})."
        return cls(message, status=status, detail=detail)


class StoreConfigurationError(ProjectPersistenceError):
    """Raised before any network call when a store URL or key is missing.

    Maps to HTTP 500 in blueprint error handlers.
    """

    def __init__(self, label: str, url_var: str, key_var: str) -> None:
        self.label = label
        super().__init__(
            f"{label} credentials are not configured. Set {url_var} and {key_var}."
        )


class CreationFailedError(ProjectPersistenceError):
    """Raised when a create succeeded at HTTP level but returned no usable row."""


class RecordNotFoundError(ProjectPersistenceError):
    """Raised when a project or process model looked up by id does not exist.

    Maps to HTTP 404.
    """
