class ToCareError(Exception):
    """Base class for errors raised by the triage engine and services."""


class ProtocolConfigurationError(ToCareError):
    """Protocol rules or config rows are missing or incomplete."""


class NotFoundError(ToCareError):
    def __init__(self, entity: str, entity_id=None):
        self.entity = entity
        self.entity_id = entity_id
        if entity_id is None:
            super().__init__(f"{entity} not found")
        else:
            super().__init__(f"{entity} {entity_id} not found")


class InvalidStateError(ToCareError):
    """The requested transition is not allowed from the current state."""


class LLMError(ToCareError):
    """The model call failed after all retries."""


class LLMValidationError(LLMError):
    def __init__(self, message: str, reason: str = ""):
        super().__init__(message)
        self.reason = reason
