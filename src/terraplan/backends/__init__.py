"""State backends.

- :class:`MemoryBackend` - in-process, for tests and ephemeral runs
- :class:`LocalBackend` - JSON files on the local filesystem
- :class:`DynamoDBBackend` - shared remote state in a DynamoDB table
"""

from .dynamodb import DynamoDBBackend
from .local import LocalBackend
from .memory import MemoryBackend

__all__ = ["DynamoDBBackend", "LocalBackend", "MemoryBackend"]
