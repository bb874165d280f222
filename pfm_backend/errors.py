from __future__ import annotations


class CashflowValidationError(ValueError):
    """Raised when cashflow input is rejected before any projection runs."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message

    def as_detail(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}
