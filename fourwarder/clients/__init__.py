"""Chat-protocol clients for the moderation relay."""

from .matrix_client import MatrixClient

__all__ = [
    "MatrixClient"
]
