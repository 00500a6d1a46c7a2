import os
import uuid
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class ClientSettings:
    """
    Typed data class for engine connection settings.
    """
    comfy_host: str
    comfy_port: int
    client_id: str
    request_timeout: float
    log_level: str


def load_settings() -> ClientSettings:
    """
    Loads connection settings from the .env file and environment variables.
    """
    load_dotenv()

    return ClientSettings(
        comfy_host=os.getenv("COMFY_HOST", "localhost"),
        comfy_port=int(os.getenv("COMFY_PORT", "8188")),
        client_id=os.getenv("COMFY_CLIENT_ID") or str(uuid.uuid4()),
        request_timeout=float(os.getenv("COMFY_REQUEST_TIMEOUT", "30.0")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
