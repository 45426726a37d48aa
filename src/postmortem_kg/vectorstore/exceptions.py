"""Embedding and vector-comparison exceptions."""


class EmbeddingError(Exception):
    """The embedding provider failed to return a usable vector."""

    def __init__(self, message: str, provider: str = "unknown"):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class EmbeddingProviderNotConfiguredError(EmbeddingError):
    """No embedding provider is configured, or the named one is unknown."""

    pass


class DimensionMismatchError(ValueError):
    """Two vectors of different length were compared.

    This points at a model/version skew between the index and the query,
    never at bad input data, so it is not coerced away.
    """

    def __init__(self, expected: int, actual: int, context: str = ""):
        self.expected = expected
        self.actual = actual
        suffix = f" ({context})" if context else ""
        super().__init__(
            f"Vector length mismatch: expected {expected}, got {actual}{suffix}"
        )
