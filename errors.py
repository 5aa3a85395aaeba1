from typing import Any, Optional


class DomainError(ValueError):
    """Base for every invariant violation reported by the services.

    ``invariant`` is a short machine-readable name for the rule that was
    broken and ``context`` carries the offending ids, so callers can build
    a user-facing message without parsing the text.
    """

    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        invariant: str = "",
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.invariant = invariant
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "invariant": self.invariant,
            "context": {
                key: value.isoformat() if hasattr(value, "isoformat") else value
                for key, value in self.context.items()
            },
        }


class InvalidStateError(DomainError):
    status_code = 409


class ConflictError(DomainError):
    status_code = 409


class ValidationError(DomainError):
    status_code = 422


class NotFoundError(DomainError):
    status_code = 404
