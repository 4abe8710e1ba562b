class PolicyAssistantError(Exception):
    """Base class for failures raised at a service boundary."""


class ConfigError(PolicyAssistantError):
    pass


class ExtractionError(PolicyAssistantError):
    """The uploaded bytes could not be read as a PDF."""


class ChunkingError(PolicyAssistantError):
    """Degenerate chunking input, e.g. a zero page count."""


class VectorStoreError(PolicyAssistantError):
    """Collection get/create, insert, query or delete failed."""


class GenerationError(PolicyAssistantError):
    """The LLM call failed."""


class ValidationError(PolicyAssistantError):
    """Request is well-formed JSON but semantically invalid."""
