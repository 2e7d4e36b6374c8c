"""Exceptions raised by the llamapool core.

Organization:
    - model lifecycle: ModelNotInitializedError, ModelNotRegisteredError,
      ResourceLoadError
    - retrieval: EmbeddingContextNotInitializedError, EmbeddingError
    - jobs: UnsupportedOperationError

ConfigError lives in llamapool.config next to the loader that raises it.
"""

from __future__ import annotations


class LlamapoolError(Exception):
    """Base class for every error raised by the core."""


class ModelNotInitializedError(LlamapoolError):
    """Raised when a job names a model that no workflow has registered.

    Fatal to the job. It is never retried internally.
    """

    def __init__(self, model_id: str) -> None:
        super().__init__(f"Model '{model_id}' is not initialized")
        self.model_id = model_id


class ModelNotRegisteredError(ModelNotInitializedError):
    """Raised by the registry when a handle is requested for an unknown model id."""


class EmbeddingContextNotInitializedError(LlamapoolError):
    """Raised when retrieval needs a vector model that is not registered.

    Either no vector model was registered at all, or the one that embedded the
    indexed documents has since been released.
    """

    def __init__(self, model_id: str | None = None) -> None:
        if model_id is None:
            message = "Embedding context not initialized: register a vector model first"
        else:
            message = (
                f"Embedding context not initialized: vector model '{model_id}' "
                "is not registered"
            )
        super().__init__(message)
        self.model_id = model_id


class UnsupportedOperationError(LlamapoolError):
    """Raised for caller errors such as streaming a vector-modality model."""


class ResourceLoadError(LlamapoolError):
    """Raised when the engine fails to load a model's weights.

    The invalid artifact has already been cleaned up when this surfaces.
    """

    def __init__(self, model_id: str, path: str, reason: str) -> None:
        super().__init__(f"Failed to load model '{model_id}' from '{path}': {reason}")
        self.model_id = model_id
        self.path = path
        self.reason = reason


class EmbeddingError(LlamapoolError):
    """Raised when a single chunk fails to embed.

    DocumentIndex catches it per chunk and skips the chunk.
    """


__all__ = [
    "LlamapoolError",
    "ModelNotInitializedError",
    "ModelNotRegisteredError",
    "EmbeddingContextNotInitializedError",
    "UnsupportedOperationError",
    "ResourceLoadError",
    "EmbeddingError",
]
