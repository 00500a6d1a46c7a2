import asyncio
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from core.graph import Graph
from core.types_registry import SerialisedPrompt

from .schemas import (
    PromptExecutionException,
    PromptMessage,
    PromptMessageStopped,
    QueuedItemStoppedReason,
)

logger = logging.getLogger(__name__)


class QueuedItemState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


_STATE_FOR_REASON = {
    QueuedItemStoppedReason.FINISHED: QueuedItemState.DONE,
    QueuedItemStoppedReason.INTERRUPTED: QueuedItemState.INTERRUPTED,
    QueuedItemStoppedReason.ERROR: QueuedItemState.FAILED,
}


class QueueItem:
    """Handle for one submitted prompt.

    Engine events for the prompt arrive on ``messages``; the last message is
    always a ``PromptMessageStopped``.
    """

    def __init__(self, prompt_id: str, number: int, payload: SerialisedPrompt, graph: Graph):
        self.prompt_id = prompt_id
        self.number = number
        self.payload = payload
        self.graph = graph
        self.messages: asyncio.Queue[PromptMessage] = asyncio.Queue()
        self.done_event = asyncio.Event()
        self.state = QueuedItemState.PENDING
        self.current_node_id: int | None = None
        self.node_errors: dict[str, Any] = {}

    @property
    def is_done(self) -> bool:
        return self.done_event.is_set()

    def node_title(self, node_id: int) -> str:
        node = self.graph.get_node_by_id(node_id)
        return node.display_title if node is not None else ""

    def publish(self, message: PromptMessage) -> None:
        if self.is_done:
            logger.debug(f"Queue item {self.prompt_id}: dropping {message.type} after stop")
            return
        self.messages.put_nowait(message)

    def mark_running(self) -> None:
        if self.state == QueuedItemState.PENDING:
            self.state = QueuedItemState.RUNNING

    def mark_stopped(
        self,
        reason: QueuedItemStoppedReason,
        exception: PromptExecutionException | None = None,
    ) -> bool:
        """Publish the final message. Returns False if the item had already stopped."""
        if self.is_done:
            return False
        self.messages.put_nowait(PromptMessageStopped(reason=reason, exception=exception))
        self.state = _STATE_FOR_REASON[reason]
        self.done_event.set()
        return True

    async def next_message(self) -> PromptMessage:
        return await self.messages.get()

    async def iter_messages(self) -> AsyncIterator[PromptMessage]:
        """Yield messages up to and including the stop message."""
        while True:
            message = await self.messages.get()
            yield message
            if isinstance(message, PromptMessageStopped):
                return

    async def wait(self) -> QueuedItemState:
        await self.done_event.wait()
        return self.state

    def __repr__(self) -> str:
        return f"QueueItem(prompt_id={self.prompt_id!r}, number={self.number}, state={self.state.value})"
