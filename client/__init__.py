"""Asynchronous client for the remote execution engine.

Modules:
- comfy_client: HTTP requests and websocket event routing
- queue_item: Per-prompt handle with its message queue
- schemas: Pydantic models for engine payloads and caller messages
"""

__all__ = []
