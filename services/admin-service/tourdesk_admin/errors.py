from __future__ import annotations


class ValidationError(ValueError):
    """
    A configuration value (percentage, day count, ...) outside its legal range.

    `errors` maps a field key (e.g. "rule_0", "processing_fee") to a message so
    callers can render them next to the offending input.
    """

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.errors: dict[str, str] = dict(errors or {})


class InvalidRuleSet(ValidationError):
    pass


class NotFoundError(LookupError):
    pass


class NetworkError(RuntimeError):
    pass


class PermissionDenied(Exception):
    pass
