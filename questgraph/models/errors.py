"""
Error taxonomy for the fact store and query orchestration.
"""


class QuestGraphError(Exception):
    """Base exception for questgraph errors."""
    pass


class ValidationError(QuestGraphError):
    """Malformed confidence, timestamp or identifier; rejected before persisting."""
    pass


class NotFoundError(QuestGraphError):
    """Operation on a fact, entity or episode that does not exist."""
    pass


class AlreadyClosedError(QuestGraphError):
    """Attempt to close a fact whose validity interval is already closed differently."""
    pass


class UpstreamTimeoutError(QuestGraphError):
    """Similarity search or graph store I/O exceeded its time budget."""
    pass


class GraphStoreError(QuestGraphError):
    """Failure inside the persistent graph store."""
    pass
