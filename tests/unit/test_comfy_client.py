import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from client.comfy_client import ClientCallbacks, ComfyClient, ComfyClientError, PromptSubmissionError
from client.queue_item import QueuedItemState
from client.schemas import (
    ImageRef,
    PromptMessageData,
    PromptMessageExecuting,
    PromptMessageProgress,
    PromptMessageStarted,
    PromptMessageStopped,
    QueuedItemStoppedReason,
)


@pytest.fixture
def callbacks():
    return ClientCallbacks(
        queue_count_changed=MagicMock(),
        item_started=MagicMock(),
        item_stopped=MagicMock(),
        item_data=MagicMock(),
    )


@pytest_asyncio.fixture
async def client(engine, callbacks):
    comfy = ComfyClient("engine.local", 8188, "client-1", callbacks, transport=httpx.MockTransport(engine))
    await comfy.init(listen=False)
    yield comfy
    await comfy.close()


@pytest_asyncio.fixture
async def queued(client, workflow_path):
    graph = client.load_graph_file(workflow_path)
    return await client.queue_prompt(graph)


def _drain(item):
    messages = []
    while not item.messages.empty():
        messages.append(item.messages.get_nowait())
    return messages


class TestHttpApi:
    """Tests for the engine HTTP endpoints."""

    def test_urls(self):
        comfy = ComfyClient("10.0.0.5", 8190, "abc")

        assert comfy.base_url == "http://10.0.0.5:8190"
        assert comfy.ws_url == "ws://10.0.0.5:8190/ws?clientId=abc"
        assert comfy.client_id == "abc"
        assert not comfy.is_initialized

    def test_generated_client_id(self):
        assert ComfyClient().client_id != ComfyClient().client_id

    @pytest.mark.asyncio
    async def test_init_fetches_catalog(self, client):
        assert client.is_initialized
        assert "KSampler" in client.node_objects

    @pytest.mark.asyncio
    async def test_load_before_init(self, workflow_path):
        comfy = ComfyClient()
        with pytest.raises(ComfyClientError, match="not initialized"):
            comfy.load_graph_file(workflow_path)
        await comfy.close()

    @pytest.mark.asyncio
    async def test_catalog_http_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with ComfyClient(transport=transport) as comfy:
            with pytest.raises(ComfyClientError, match="HTTP 500"):
                await comfy.init(listen=False)

    @pytest.mark.asyncio
    async def test_connection_error_is_wrapped(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with ComfyClient(transport=httpx.MockTransport(refuse)) as comfy:
            with pytest.raises(ComfyClientError, match="GET /object_info failed"):
                await comfy.get_object_info()

    @pytest.mark.asyncio
    async def test_connect_timeout_is_retried_once(self, engine):
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectTimeout("timed out", request=request)
            return engine(request)

        with patch("client.comfy_client.asyncio.sleep", new=AsyncMock()) as sleep:
            async with ComfyClient(transport=httpx.MockTransport(flaky)) as comfy:
                await comfy.get_object_info()

        assert len(calls) == 2
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_queue_prompt_posts_compiled_prompt(self, client, queued, engine):
        (payload,) = engine.prompts

        assert payload["client_id"] == "client-1"
        assert list(payload["prompt"].keys()) == ["4", "5", "6", "7", "3", "8", "9"]
        assert payload["prompt"]["3"]["inputs"]["seed"] == 42
        assert "workflow" in payload["extra_data"]["extra_pnginfo"]
        assert queued.prompt_id == "p1"
        assert queued.number == 3
        assert queued.payload == payload
        assert client.get_queue_item("p1") is queued

    @pytest.mark.asyncio
    async def test_queue_prompt_rejected(self, client, engine, workflow_path):
        engine.prompt_response = (
            400,
            {"error": {"type": "prompt_outputs_failed_validation"}, "node_errors": {"3": {"errors": []}}},
        )
        graph = client.load_graph_file(workflow_path)

        with pytest.raises(PromptSubmissionError, match="HTTP 400") as exc_info:
            await client.queue_prompt(graph)

        assert exc_info.value.node_errors == {"3": {"errors": []}}

    @pytest.mark.asyncio
    async def test_queue_prompt_node_errors_still_tracked(self, client, engine, workflow_path):
        engine.prompt_response = (200, {"prompt_id": "p2", "number": 0, "node_errors": {"9": {"errors": ["x"]}}})
        graph = client.load_graph_file(workflow_path)

        item = await client.queue_prompt(graph)
        for value in (1, 2, 3):
            client.handle_message({"type": "progress", "data": {"value": value, "max": 3, "prompt_id": "p2"}})

        assert item.node_errors == {"9": {"errors": ["x"]}}
        assert client.get_queue_item("p2") is item
        assert [m.value for m in _drain(item)] == [1, 2, 3]
        assert client._early_messages == {}

    @pytest.mark.asyncio
    async def test_get_image(self, client, engine):
        data = await client.get_image(ImageRef(filename="ComfyUI_00001_.png"))

        assert data == b"\x89PNG"
        params = engine.requests[-1].url.params
        assert params["filename"] == "ComfyUI_00001_.png"
        assert params["type"] == "output"

    @pytest.mark.asyncio
    async def test_upload_image(self, client, engine):
        result = await client.upload_image(b"data", "cat.png", overwrite=True)

        assert result.name == "cat.png"
        body = engine.requests[-1].content
        assert b'name="overwrite"' in body
        assert b'filename="cat.png"' in body

    @pytest.mark.asyncio
    async def test_history_and_queue_count(self, client, callbacks):
        assert await client.get_history("p1") == {"outputs": {"9": {"images": []}}}
        assert await client.get_queue_count() == 2
        assert client.queue_count == 2
        callbacks.queue_count_changed.assert_called_once_with(client, 2)

    @pytest.mark.asyncio
    async def test_interrupt(self, client, engine):
        await client.interrupt()

        assert engine.requests[-1].url.path == "/interrupt"

    @pytest.mark.asyncio
    async def test_unknown_history(self, client):
        with pytest.raises(ComfyClientError, match="HTTP 404"):
            await client.get_history("missing")


class TestEngineMessages:
    """Tests for routing websocket events to queue items."""

    @pytest.mark.asyncio
    async def test_successful_run(self, client, queued, callbacks):
        client.handle_message(json.dumps({"type": "execution_start", "data": {"prompt_id": "p1"}}))
        client.handle_message(json.dumps({"type": "executing", "data": {"node": "3", "prompt_id": "p1"}}))
        client.handle_message(json.dumps({"type": "progress", "data": {"value": 5, "max": 20, "prompt_id": "p1"}}))
        client.handle_message(
            json.dumps(
                {
                    "type": "executed",
                    "data": {
                        "node": "9",
                        "prompt_id": "p1",
                        "output": {"images": [{"filename": "out.png", "subfolder": "", "type": "output"}]},
                    },
                }
            )
        )
        client.handle_message(json.dumps({"type": "executing", "data": {"node": None, "prompt_id": "p1"}}))

        messages = [m async for m in queued.iter_messages()]

        assert [type(m) for m in messages] == [
            PromptMessageStarted,
            PromptMessageExecuting,
            PromptMessageProgress,
            PromptMessageData,
            PromptMessageStopped,
        ]
        assert messages[1].node_id == 3
        assert messages[1].title == "KSampler"
        assert messages[2].node_id == 3
        assert messages[3].images == [ImageRef(filename="out.png")]
        assert messages[4].reason == QueuedItemStoppedReason.FINISHED
        assert await queued.wait() == QueuedItemState.DONE
        assert client.get_queue_item("p1") is None
        callbacks.item_started.assert_called_once_with(client, queued)
        callbacks.item_data.assert_called_once()
        callbacks.item_stopped.assert_called_once_with(client, queued, QueuedItemStoppedReason.FINISHED)

    @pytest.mark.asyncio
    async def test_execution_error(self, client, queued):
        client.handle_message({"type": "execution_start", "data": {"prompt_id": "p1"}})
        client.handle_message(
            {
                "type": "execution_error",
                "data": {
                    "prompt_id": "p1",
                    "node_id": "8",
                    "node_type": "VAEDecode",
                    "exception_message": "out of memory",
                    "exception_type": "RuntimeError",
                    "traceback": ["line 1"],
                },
            }
        )

        stopped = _drain(queued)[-1]

        assert stopped.reason == QueuedItemStoppedReason.ERROR
        assert stopped.exception.node_id == 8
        assert "out of memory" in str(stopped.exception)
        assert queued.state == QueuedItemState.FAILED

    @pytest.mark.asyncio
    async def test_interrupted(self, client, queued):
        client.handle_message({"type": "execution_interrupted", "data": {"prompt_id": "p1", "node_id": "3"}})

        assert queued.state == QueuedItemState.INTERRUPTED
        assert _drain(queued)[-1].reason == QueuedItemStoppedReason.INTERRUPTED

    @pytest.mark.asyncio
    async def test_success_message_stops_once(self, client, queued, callbacks):
        client.handle_message({"type": "execution_success", "data": {"prompt_id": "p1"}})
        client.handle_message({"type": "executing", "data": {"node": None, "prompt_id": "p1"}})

        messages = _drain(queued)
        assert len(messages) == 1
        assert callbacks.item_stopped.call_count == 1
        assert client.get_queue_item("p1") is None
        assert client._early_messages == {}

    @pytest.mark.asyncio
    async def test_progress_without_prompt_id_uses_running_prompt(self, client, queued):
        client.handle_message({"type": "execution_start", "data": {"prompt_id": "p1"}})
        client.handle_message({"type": "progress", "data": {"value": 1, "max": 4, "node": "3"}})

        progress = _drain(queued)[-1]
        assert isinstance(progress, PromptMessageProgress)
        assert (progress.value, progress.max, progress.node_id) == (1, 4, 3)

    @pytest.mark.asyncio
    async def test_early_messages_are_replayed(self, client, workflow_path):
        client.handle_message({"type": "execution_start", "data": {"prompt_id": "p1"}})

        item = await client.queue_prompt(client.load_graph_file(workflow_path))

        assert isinstance(_drain(item)[0], PromptMessageStarted)
        assert item.state == QueuedItemState.RUNNING

    @pytest.mark.asyncio
    async def test_status_updates_queue_count(self, client, callbacks):
        client.handle_message({"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 4}}, "sid": "x"}})
        client.handle_message({"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 4}}}})

        assert client.queue_count == 4
        callbacks.queue_count_changed.assert_called_once_with(client, 4)

    @pytest.mark.asyncio
    async def test_ignored_frames(self, client, queued):
        client.handle_message(b"\x00\x01binary preview")
        client.handle_message("not json")
        client.handle_message({"type": "crystools.monitor", "data": {}})
        client.handle_message({"type": "progress", "data": {"prompt_id": "p1"}})
        client.handle_message({"type": "execution_start", "data": {"prompt_id": "other"}})

        assert queued.messages.empty()
        assert queued.state == QueuedItemState.PENDING

    @pytest.mark.asyncio
    async def test_unregistered_prompts_are_bounded(self, client):
        with patch("client.comfy_client.MAX_EARLY_PROMPTS", 2):
            for prompt_id in ("a", "b", "c"):
                client.handle_message({"type": "progress", "data": {"value": 1, "max": 2, "prompt_id": prompt_id}})

        assert list(client._early_messages) == ["b", "c"]

    @pytest.mark.asyncio
    async def test_finished_prompts_are_bounded(self, client, queued):
        client.handle_message({"type": "execution_success", "data": {"prompt_id": "p1"}})
        assert client._finished_prompt_ids == {"p1"}

        with patch("client.comfy_client.MAX_FINISHED_PROMPTS", 1):
            client._remember_finished("p0")

        assert client._finished_prompt_ids == {"p0"}
        assert list(client._finished_order) == ["p0"]


class _FakeSocket:
    """Websocket stand-in that yields canned frames and then stays open."""

    def __init__(self, frames):
        self.frames = frames

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        await asyncio.Event().wait()


class TestWebsocketConnection:
    """Tests for connecting the event websocket during init."""

    @pytest.mark.asyncio
    async def test_init_returns_once_connected(self, engine, callbacks):
        status = json.dumps({"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 5}}}})

        with patch("client.comfy_client.websockets.connect", return_value=_FakeSocket([status])) as connect:
            async with ComfyClient(
                "engine.local", 8188, "client-1", callbacks, transport=httpx.MockTransport(engine)
            ) as comfy:
                await comfy.init()

                assert comfy.is_connected
                assert comfy.queue_count == 5
                connect.assert_called_once_with(comfy.ws_url)

            assert not comfy.is_connected

    @pytest.mark.asyncio
    async def test_init_fails_when_socket_never_opens(self, engine):
        with (
            patch("client.comfy_client.websockets.connect", side_effect=OSError("connection refused")),
            patch("client.comfy_client.RECONNECT_DELAY_SECONDS", 0),
        ):
            async with ComfyClient(timeout=0.05, transport=httpx.MockTransport(engine)) as comfy:
                with pytest.raises(ComfyClientError, match="Could not connect"):
                    await comfy.init()

                assert comfy._listener_task is None
                assert not comfy.is_connected
