import asyncio
import json
import logging
import os
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import websockets
from pydantic import ValidationError

from core.graph import Graph
from core.graph_loader import GraphSource, load_graph, load_graph_file
from core.node_registry import NodeObjects, load_node_objects
from core.prompt_compiler import compile_prompt

from .queue_item import QueueItem
from .schemas import (
    ENGINE_MESSAGE_ADAPTER,
    ENGINE_MESSAGE_TYPES,
    ExecutedMessage,
    ExecutingMessage,
    ExecutionErrorMessage,
    ExecutionInterruptedMessage,
    ExecutionStartMessage,
    ExecutionSuccessMessage,
    ImageRef,
    ProgressMessage,
    PromptExecutionException,
    PromptMessageData,
    PromptMessageExecuting,
    PromptMessageProgress,
    PromptMessageStarted,
    QueuedItemStoppedReason,
    QueuePromptResponse,
    StatusMessage,
    UploadImageResponse,
)

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 1.0
# Bounds on per-prompt bookkeeping for prompts this client never registers
MAX_EARLY_PROMPTS = 32
MAX_FINISHED_PROMPTS = 256


class ComfyClientError(Exception):
    """Base exception for engine communication failures."""

    pass


class PromptSubmissionError(ComfyClientError):
    """Raised when the engine refuses a prompt."""

    def __init__(self, message: str, node_errors: dict[str, Any] | None = None):
        super().__init__(message)
        self.node_errors = node_errors or {}


@dataclass
class ClientCallbacks:
    """Optional hooks invoked from the websocket listener."""

    queue_count_changed: Callable[["ComfyClient", int], None] | None = None
    item_started: Callable[["ComfyClient", QueueItem], None] | None = None
    item_stopped: Callable[["ComfyClient", QueueItem, QueuedItemStoppedReason], None] | None = None
    item_data: Callable[["ComfyClient", QueueItem, PromptMessageData], None] | None = None


def _node_id(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class ComfyClient:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 8188,
        client_id: str | None = None,
        callbacks: ClientCallbacks | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host
        self.port = port
        self._client_id = client_id or str(uuid.uuid4())
        self.callbacks = callbacks or ClientCallbacks()
        self.base_url = f"http://{host}:{port}"
        self.ws_url = f"ws://{host}:{port}/ws?clientId={self._client_id}"
        self._timeout = timeout
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._node_objects: NodeObjects | None = None
        self._items: dict[str, QueueItem] = {}
        self._early_messages: dict[str, list[Any]] = {}
        self._finished_prompt_ids: set[str] = set()
        self._finished_order: deque[str] = deque()
        self._connected = asyncio.Event()
        self._running_prompt_id: str | None = None
        self._queue_count = 0
        self._listener_task: asyncio.Task[None] | None = None

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def node_objects(self) -> NodeObjects | None:
        return self._node_objects

    @property
    def is_initialized(self) -> bool:
        return self._node_objects is not None

    @property
    def queue_count(self) -> int:
        return self._queue_count

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def __aenter__(self) -> "ComfyClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def init(self, listen: bool = True) -> None:
        """Fetch node definitions and connect the event websocket.

        The engine only sends execution events to client ids that are already
        connected, so this returns once the socket is open. Raises
        ComfyClientError if it does not open within the request timeout.
        """
        await self.get_object_info()
        if not listen or self._listener_task is not None:
            return
        self._listener_task = asyncio.create_task(self._listen())
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            await self._stop_listener()
            raise ComfyClientError(f"Could not connect to {self.ws_url} within {self._timeout}s") from e

    async def close(self) -> None:
        await self._stop_listener()
        await self._http.aclose()

    async def _stop_listener(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None
        self._connected.clear()

    # ============================================================================
    # HTTP API
    # ============================================================================

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response: httpx.Response | None = None
        try:
            # simple retry for transient connect timeouts
            for attempt in range(2):
                try:
                    response = await self._http.request(method, url, **kwargs)
                    break
                except httpx.ConnectTimeout:
                    if attempt == 1:
                        raise
                    await asyncio.sleep(0.5)
        except httpx.HTTPError as e:
            raise ComfyClientError(f"{method} {url} failed: {e}") from e
        if response is None:
            raise ComfyClientError(f"No response received for {method} {url}")
        return response

    async def get_object_info(self) -> NodeObjects:
        response = await self._request("GET", "/object_info")
        if response.status_code != 200:
            raise ComfyClientError(f"Failed to fetch node definitions: HTTP {response.status_code}")
        self._node_objects = load_node_objects(response.json())
        logger.info(f"Fetched {len(self._node_objects)} node definitions from {self.base_url}")
        return self._node_objects

    def _require_node_objects(self) -> NodeObjects:
        if self._node_objects is None:
            raise ComfyClientError("Client is not initialized; call init() first")
        return self._node_objects

    def load_graph(self, source: GraphSource) -> Graph:
        return load_graph(source, self._require_node_objects())

    def load_graph_file(self, path: str | os.PathLike[str]) -> Graph:
        return load_graph_file(path, self._require_node_objects())

    async def queue_prompt(self, graph: Graph) -> QueueItem:
        """Compile and submit a graph. The payload is frozen at submission."""
        prompt = compile_prompt(graph, self._client_id)
        for diagnostic in prompt.diagnostics:
            logger.warning(f"Prompt compile: {diagnostic}")
        payload = prompt.to_dict()

        response = await self._request("POST", "/prompt", json=payload)
        if response.status_code != 200:
            detail = _error_detail(response)
            raise PromptSubmissionError(
                f"Prompt rejected: HTTP {response.status_code}: {detail.get('error', detail)}",
                detail.get("node_errors"),
            )
        try:
            queued = QueuePromptResponse.model_validate(response.json())
        except (ValidationError, json.JSONDecodeError) as e:
            raise ComfyClientError(f"Unexpected /prompt response: {e}") from e
        item = QueueItem(queued.prompt_id, queued.number, payload, graph)
        # the engine still runs the outputs that passed validation
        item.node_errors = queued.node_errors
        if queued.node_errors:
            logger.warning(f"Prompt {item.prompt_id} queued with errors on nodes {sorted(queued.node_errors)}")
        self._items[item.prompt_id] = item
        for raw in self._early_messages.pop(item.prompt_id, []):
            self.handle_message(raw)
        logger.info(f"Queued prompt {item.prompt_id} (number {item.number})")
        return item

    def get_queue_item(self, prompt_id: str) -> QueueItem | None:
        return self._items.get(prompt_id)

    async def get_image(self, image: ImageRef) -> bytes:
        response = await self._request("GET", "/view", params=image.model_dump())
        if response.status_code != 200:
            raise ComfyClientError(f"Failed to fetch image {image.filename}: HTTP {response.status_code}")
        return response.content

    async def upload_image(
        self,
        data: bytes,
        filename: str,
        overwrite: bool = False,
        subfolder: str = "",
        image_type: str = "input",
    ) -> UploadImageResponse:
        form = {"overwrite": str(overwrite).lower(), "subfolder": subfolder, "type": image_type}
        response = await self._request(
            "POST", "/upload/image", data=form, files={"image": (filename, data)}
        )
        if response.status_code != 200:
            raise ComfyClientError(f"Failed to upload {filename}: HTTP {response.status_code}")
        return UploadImageResponse.model_validate(response.json())

    async def get_history(self, prompt_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/history/{prompt_id}")
        if response.status_code != 200:
            raise ComfyClientError(f"Failed to fetch history for {prompt_id}: HTTP {response.status_code}")
        return response.json().get(prompt_id, {})

    async def get_queue_count(self) -> int:
        response = await self._request("GET", "/prompt")
        if response.status_code != 200:
            raise ComfyClientError(f"Failed to fetch queue status: HTTP {response.status_code}")
        count = int(response.json().get("exec_info", {}).get("queue_remaining", 0))
        self._set_queue_count(count)
        return count

    async def interrupt(self) -> None:
        response = await self._request("POST", "/interrupt")
        if response.status_code != 200:
            raise ComfyClientError(f"Failed to interrupt: HTTP {response.status_code}")

    # ============================================================================
    # Websocket events
    # ============================================================================

    async def _listen(self) -> None:
        while True:
            try:
                async with websockets.connect(self.ws_url) as ws:
                    logger.info(f"Connected to {self.ws_url}")
                    self._connected.set()
                    try:
                        async for raw in ws:
                            self.handle_message(raw)
                    finally:
                        self._connected.clear()
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.WebSocketException) as e:
                logger.warning(f"Websocket connection lost: {e}; reconnecting")
            await asyncio.sleep(RECONNECT_DELAY_SECONDS)

    def handle_message(self, raw: str | bytes | dict[str, Any]) -> None:
        """Route one engine event to the queue item it belongs to."""
        if isinstance(raw, bytes):
            # binary frames carry preview images
            logger.debug(f"Ignoring {len(raw)} byte binary frame")
            return
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError:
            logger.warning("Ignoring websocket frame that is not JSON")
            return
        if not isinstance(data, dict) or data.get("type") not in ENGINE_MESSAGE_TYPES:
            logger.debug(f"Ignoring engine message {data.get('type') if isinstance(data, dict) else data!r}")
            return
        try:
            message = ENGINE_MESSAGE_ADAPTER.validate_python(data)
        except ValidationError as e:
            logger.warning(f"Malformed {data.get('type')} message: {e}")
            return

        if isinstance(message, StatusMessage):
            self._set_queue_count(message.data.status.exec_info.queue_remaining)
            return

        prompt_id = message.data.prompt_id or self._running_prompt_id
        if prompt_id is None:
            return
        item = self._items.get(prompt_id)
        if item is None and prompt_id in self._finished_prompt_ids:
            logger.debug(f"Dropping {message.type} for finished prompt {prompt_id}")
            return
        if item is None:
            # events can arrive before the /prompt response registers the item
            self._buffer_early_message(prompt_id, data)
            return

        if isinstance(message, ExecutionStartMessage):
            self._running_prompt_id = prompt_id
            item.mark_running()
            item.publish(PromptMessageStarted(prompt_id=prompt_id))
            if self.callbacks.item_started:
                self.callbacks.item_started(self, item)
        elif isinstance(message, ExecutingMessage):
            node_id = _node_id(message.data.node)
            if message.data.node is None:
                self._stop_item(item, QueuedItemStoppedReason.FINISHED)
            elif node_id is not None:
                item.current_node_id = node_id
                item.publish(PromptMessageExecuting(node_id=node_id, title=item.node_title(node_id)))
        elif isinstance(message, ProgressMessage):
            node_id = _node_id(message.data.node)
            item.publish(
                PromptMessageProgress(
                    value=message.data.value,
                    max=message.data.max,
                    node_id=node_id if node_id is not None else item.current_node_id,
                )
            )
        elif isinstance(message, ExecutedMessage):
            node_id = _node_id(message.data.node)
            if node_id is None:
                return
            images = [ImageRef.model_validate(i) for i in message.data.output.get("images") or []]
            data_msg = PromptMessageData(node_id=node_id, images=images, output=message.data.output)
            item.publish(data_msg)
            if self.callbacks.item_data:
                self.callbacks.item_data(self, item, data_msg)
        elif isinstance(message, ExecutionErrorMessage):
            exception = PromptExecutionException(
                node_id=_node_id(message.data.node_id),
                node_type=message.data.node_type,
                message=message.data.exception_message,
                exception_type=message.data.exception_type,
                traceback=message.data.traceback,
            )
            self._stop_item(item, QueuedItemStoppedReason.ERROR, exception)
        elif isinstance(message, ExecutionInterruptedMessage):
            self._stop_item(item, QueuedItemStoppedReason.INTERRUPTED)
        elif isinstance(message, ExecutionSuccessMessage):
            self._stop_item(item, QueuedItemStoppedReason.FINISHED)
        else:
            logger.debug(f"Prompt {prompt_id}: {message.type}")

    def _stop_item(
        self,
        item: QueueItem,
        reason: QueuedItemStoppedReason,
        exception: PromptExecutionException | None = None,
    ) -> None:
        if not item.mark_stopped(reason, exception):
            return
        self._items.pop(item.prompt_id, None)
        self._remember_finished(item.prompt_id)
        if self._running_prompt_id == item.prompt_id:
            self._running_prompt_id = None
        logger.debug(f"Prompt {item.prompt_id} stopped: {reason.value}")
        if self.callbacks.item_stopped:
            self.callbacks.item_stopped(self, item, reason)

    def _buffer_early_message(self, prompt_id: str, data: dict[str, Any]) -> None:
        if prompt_id not in self._early_messages and len(self._early_messages) >= MAX_EARLY_PROMPTS:
            # oldest unclaimed prompt belongs to another client or a lost submission
            stale = next(iter(self._early_messages))
            dropped = self._early_messages.pop(stale)
            logger.debug(f"Dropping {len(dropped)} buffered events for unregistered prompt {stale}")
        self._early_messages.setdefault(prompt_id, []).append(data)

    def _remember_finished(self, prompt_id: str) -> None:
        self._finished_prompt_ids.add(prompt_id)
        self._finished_order.append(prompt_id)
        while len(self._finished_order) > MAX_FINISHED_PROMPTS:
            self._finished_prompt_ids.discard(self._finished_order.popleft())

    def _set_queue_count(self, count: int) -> None:
        if count == self._queue_count:
            return
        self._queue_count = count
        if self.callbacks.queue_count_changed:
            self.callbacks.queue_count_changed(self, count)


def _error_detail(response: httpx.Response) -> dict[str, Any]:
    try:
        detail = response.json()
    except json.JSONDecodeError:
        return {"error": response.text}
    return detail if isinstance(detail, dict) else {"error": detail}
