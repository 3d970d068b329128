"""Storage backend for Courier.

This module provides the storage layer persisting subscriptions,
events, deliveries and delivery attempts to Qdrant.

Example:
    ```python
    from courier.storage import CourierStorage

    async with CourierStorage(location=":memory:") as storage:
        await storage.put_delivery(delivery)
        due = await storage.find_due_retries(now)
    ```
"""

from .base import COLLECTION_NAMES
from .client import CourierStorage
from .retry import qdrant_retry

__all__ = [
    "CourierStorage",
    "COLLECTION_NAMES",
    "qdrant_retry",
]
