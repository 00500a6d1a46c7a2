import copy
import json
import os
import sys
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from dotenv import load_dotenv


def _ensure_project_root_on_path() -> None:
    this_file = Path(__file__).resolve()
    project_root = this_file.parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


_ensure_project_root_on_path()

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"

ENV_VARS = ("COMFY_HOST", "COMFY_PORT", "COMFY_CLIENT_ID", "COMFY_REQUEST_TIMEOUT", "LOG_LEVEL")


@pytest.fixture(autouse=True)
def test_env_isolation(tmp_path):
    """Point settings at an isolated temporary .env file for each test."""
    env_dir = tmp_path / "isolated_env"
    env_dir.mkdir()
    dotenv_path = env_dir / ".env"
    dotenv_path.touch()

    # load_dotenv writes into os.environ, which is restored on exit
    with patch.dict(os.environ), patch("config.settings.load_dotenv", side_effect=lambda: load_dotenv(dotenv_path)):
        for name in ENV_VARS:
            os.environ.pop(name, None)
        yield dotenv_path


@pytest.fixture(scope="session")
def object_info_data() -> dict[str, Any]:
    with open(FIXTURES_DIR / "object_info.json", encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def object_info(object_info_data) -> dict[str, Any]:
    """Fresh copy of the catalog fixture, safe to mutate."""
    return copy.deepcopy(object_info_data)


@pytest.fixture
def node_objects(object_info):
    from core.node_registry import NodeObjects

    return NodeObjects.from_object_info(object_info)


@pytest.fixture
def workflow_path() -> Path:
    return FIXTURES_DIR / "workflow.json"


@pytest.fixture
def workflow_document(workflow_path) -> dict[str, Any]:
    with open(workflow_path, encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def workflow_graph(workflow_path, node_objects):
    from core.graph_loader import load_graph_file

    return load_graph_file(workflow_path, node_objects)


class FakeEngine:
    """Minimal stand-in for the engine's HTTP API."""

    def __init__(self, object_info):
        self.object_info = object_info
        self.prompts: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.prompt_response: tuple[int, dict] = (200, {"prompt_id": "p1", "number": 3, "node_errors": {}})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path == "/object_info":
            return httpx.Response(200, json=self.object_info)
        if request.method == "POST" and path == "/prompt":
            self.prompts.append(json.loads(request.content))
            status, body = self.prompt_response
            return httpx.Response(status, json=body)
        if request.method == "GET" and path == "/prompt":
            return httpx.Response(200, json={"exec_info": {"queue_remaining": 2}})
        if request.method == "GET" and path == "/view":
            return httpx.Response(200, content=b"\x89PNG")
        if request.method == "POST" and path == "/upload/image":
            return httpx.Response(200, json={"name": "cat.png", "subfolder": "", "type": "input"})
        if request.method == "GET" and path == "/history/p1":
            return httpx.Response(200, json={"p1": {"outputs": {"9": {"images": []}}}})
        if request.method == "POST" and path == "/interrupt":
            return httpx.Response(200)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def engine(object_info):
    return FakeEngine(object_info)
