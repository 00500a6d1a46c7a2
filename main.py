"""
Queue a saved workflow on a remote engine and save the images it produces.

Usage examples:
    python main.py workflow.json
    python main.py --address 10.0.0.5 --port 8188 --set Seed=2290222 --set "Positive=a dive bar" workflow.json

Nodes placed in the workflow's "API" group can be set by title with --set.
Connection defaults come from COMFY_HOST / COMFY_PORT (see config/settings.py).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from client.comfy_client import ClientCallbacks, ComfyClient, ComfyClientError
from client.queue_item import QueueItem
from client.schemas import (
    PromptMessageData,
    PromptMessageExecuting,
    PromptMessageProgress,
    PromptMessageStarted,
    PromptMessageStopped,
)
from config.settings import load_settings
from core.simple_api import DEFAULT_API_GROUP, get_simple_api
from core.types_registry import GraphError, PropertyValueError
from utils.logging_config import setup_logging

logger = logging.getLogger("comfygraph")


def _parse_assignment(text: str) -> Tuple[str, str]:
    title, sep, value = text.partition("=")
    if not sep or not title:
        raise argparse.ArgumentTypeError(f"expected Title=value, got {text!r}")
    return title, value


def build_parser(default_host: str, default_port: int) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Queue a workflow JSON file on a remote engine.")
    parser.add_argument("workflow", help="Path to workflow json file")
    parser.add_argument("--address", default=default_host, help="Server address")
    parser.add_argument("--port", type=int, default=default_port, help="Server port")
    parser.add_argument(
        "--set",
        dest="assignments",
        action="append",
        type=_parse_assignment,
        default=[],
        metavar="TITLE=VALUE",
        help=f"Set the first property of a node in the {DEFAULT_API_GROUP!r} group",
    )
    parser.add_argument("--group", default=DEFAULT_API_GROUP, help="Group holding the settable nodes")
    parser.add_argument("--output-dir", default=".", help="Directory for returned images")
    return parser


async def _save_images(client: ComfyClient, message: PromptMessageData, output_dir: Path) -> None:
    for image in message.images:
        data = await client.get_image(image)
        target = output_dir / image.filename
        target.write_bytes(data)
        logger.info(f"Got image: {target}")


async def _follow(client: ComfyClient, item: QueueItem, output_dir: Path) -> int:
    async for message in item.iter_messages():
        if isinstance(message, PromptMessageStarted):
            logger.info(f"Start executing prompt ID {message.prompt_id}")
        elif isinstance(message, PromptMessageExecuting):
            logger.info(f"Executing Node: {message.node_id} {message.title}")
        elif isinstance(message, PromptMessageProgress):
            logger.info(f"Progress {message.value}/{message.max}")
        elif isinstance(message, PromptMessageData):
            await _save_images(client, message, output_dir)
        elif isinstance(message, PromptMessageStopped):
            if message.exception is not None:
                logger.error(str(message.exception))
                return 1
            logger.info(f"Prompt {item.prompt_id} {message.reason.value}")
    return 0


async def run(args: argparse.Namespace, client_id: str, timeout: float) -> int:
    callbacks = ClientCallbacks(
        queue_count_changed=lambda c, count: logger.info(f"Client {c.client_id} queue size: {count}"),
    )
    async with ComfyClient(args.address, args.port, client_id, callbacks, timeout) as client:
        logger.info(f"Initialize client with ID: {client.client_id}")
        await client.init()

        graph = client.load_graph_file(args.workflow)
        for diagnostic in graph.diagnostics:
            logger.warning(f"Workflow: {diagnostic}")

        simple_api = get_simple_api(graph, args.group)
        for title, value in args.assignments:
            simple_api.set_value(title, value)

        item = await client.queue_prompt(graph)
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        return await _follow(client, item, output_dir)


def main(argv: Optional[List[str]] = None) -> int:
    settings = load_settings()
    setup_logging(settings.log_level)
    args = build_parser(settings.comfy_host, settings.comfy_port).parse_args(argv)
    try:
        return asyncio.run(run(args, settings.client_id, settings.request_timeout))
    except (GraphError, ComfyClientError) as e:
        logger.error(str(e))
        return 1
    except (KeyError, PropertyValueError) as e:
        logger.error(f"Cannot apply --set: {e}")
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
