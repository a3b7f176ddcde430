"""Exception hierarchy for the pipeline.

Initialization problems (configuration, collaborators) are fatal. Per-document
problems are recorded by the stages and never raised past them. Stage-level
problems reach the orchestrator, which applies the fail-fast policy.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    """Missing or invalid configuration."""


class StageInitializationError(PipelineError):
    """A stage could not acquire one of its collaborators."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage {stage} failed to initialize: {cause}")


class StageNotInitializedError(PipelineError):
    """A stage was executed before initialize() completed."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Stage {stage} is not initialized")


class PipelineStageError(PipelineError):
    """A stage failed and the pipeline was aborted (fail-fast)."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Pipeline failed at stage {stage}: {cause}")


class SourceAPIError(PipelineError):
    """The document source API returned an error."""

    def __init__(self, message: str, code: Optional[int] = None, status: Optional[int] = None):
        self.code = code
        self.status = status
        super().__init__(message)


class SourceAuthenticationError(SourceAPIError):
    """Could not obtain or refresh a source access token."""


class UnsupportedDocumentTypeError(PipelineError):
    """No extractor or content endpoint exists for a document type."""

    def __init__(self, doc_type: str):
        self.doc_type = doc_type
        super().__init__(f"Unsupported document type: {doc_type}")


class AIServiceError(PipelineError):
    """The AI provider returned an empty or unusable response."""


class SearchIndexError(PipelineError):
    """The search index rejected a request."""
