class ValidationError(ValueError):
    """Request data failed validation before reaching storage or the scheduler."""


class NotFoundError(LookupError):
    """The referenced row does not exist or is not owned by the caller."""


class AIResponseError(RuntimeError):
    """The generative model returned output that could not be used."""
