from .base import ChangeTransport, Row, SnapshotSource

__all__ = [
    "ChangeTransport",
    "Row",
    "SnapshotSource",
]
