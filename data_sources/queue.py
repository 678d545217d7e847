"""
Request Queue - FIFO buffer between request registration and processing.

Each entry pairs a DataRequest with the future its caller awaits.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Optional

from data_sources.models import DataRequest


logger = logging.getLogger(__name__)


@dataclass
class QueuedRequest:
    request: DataRequest
    future: "asyncio.Future[Any]"


class RequestQueue:
    """Unbounded FIFO of pending requests."""

    def __init__(self) -> None:
        self._items: Deque[QueuedRequest] = deque()

    def push(self, request: DataRequest) -> "asyncio.Future[Any]":
        future = asyncio.get_running_loop().create_future()
        self._items.append(QueuedRequest(request=request, future=future))
        logger.debug(f"Queued {request.type.value} request {request.request_id}, depth={len(self._items)}")
        return future

    def pop(self) -> Optional[QueuedRequest]:
        """Oldest entry whose caller is still waiting."""
        while self._items:
            item = self._items.popleft()
            if not item.future.done():
                return item
        return None

    def cancel_all(self) -> int:
        cancelled = 0
        while self._items:
            item = self._items.popleft()
            if not item.future.done():
                item.future.cancel()
                cancelled += 1
        return cancelled

    def __len__(self) -> int:
        return len(self._items)
