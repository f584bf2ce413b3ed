"""Configuration loading for the web push dispatcher."""

from __future__ import annotations

import configparser
import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_QUEUE_NAME = "default.webpush.queue"
DEFAULT_BATCH_SIZE = 500


class WebPushSenderSettings(BaseModel):
    """Settings of the queue consumer that talks to the push gateway."""

    type: str = "default"
    queue_name: str = DEFAULT_QUEUE_NAME
    push_api_url: str = "http://localhost:8080"
    push_contact_api_url: Optional[str] = None
    action_click_event_endpoint_path: Optional[str] = None
    concurrency: int = Field(default=10, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)


class WebPushPublisherSettings(BaseModel):
    """Settings of the fan-out producer."""

    batch_size: int = DEFAULT_BATCH_SIZE
    push_contact_api_url: Optional[str] = None
    clicked_event_endpoint_path: Optional[str] = None
    received_event_endpoint_path: Optional[str] = None
    push_endpoint_mappings: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("batch_size")
    @classmethod
    def _default_when_not_positive(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_BATCH_SIZE


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with WPD_):
      WPD_CONFIG - Path to config.ini file (default: config.ini)
      WPD_DB_PATH - Database path (default: /data/webpush_dispatch.db)
      WPD_HOST - Server host (default: 0.0.0.0)
      WPD_PORT - Server port (default: 8000)
      WPD_API_TOKEN - API authentication token
      WPD_SENDER_TYPE - Sender variant (default: default)
      WPD_QUEUE_NAME - Queue consumed by the sender (default: default.webpush.queue)
      WPD_PUSH_API_URL - Push gateway base URL
      WPD_PUSH_CONTACT_API_URL - Public base URL used in event callback endpoints
      WPD_ACTION_CLICK_EVENT_ENDPOINT_PATH - Action click callback template
      WPD_SENDER_CONCURRENCY - Handlers in flight per sender (default: 10)
      WPD_REQUEST_TIMEOUT - Gateway request timeout in seconds (default: 30)
      WPD_BATCH_SIZE - Fan-out chunk size (default: 500)
      WPD_CLICKED_EVENT_ENDPOINT_PATH - Click callback template
      WPD_RECEIVED_EVENT_ENDPOINT_PATH - Received callback template
      WPD_PUSH_ENDPOINT_MAPPINGS - JSON object, queue prefix -> list of endpoint URL prefixes
      WPD_TOKEN_KEY - Base64 AES-256 key for callback tokens

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [sender] type, queue_name, push_api_url, push_contact_api_url,
               action_click_event_endpoint_path, concurrency, request_timeout
      [publisher] batch_size, clicked_event_endpoint_path, received_event_endpoint_path,
                  push_endpoint_mappings
      [security] token_key
    """
    config_path = Path(config_path or os.getenv("WPD_CONFIG", "config.ini"))
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    def get_json(section: str, option: str, fallback: str | None = None) -> dict:
        value = get(section, option, fallback)
        if not value:
            return {}
        try:
            data = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in [{section}] {option}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"[{section}] {option} must be a JSON object")
        return data

    push_contact_api_url = get("sender", "push_contact_api_url", os.getenv("WPD_PUSH_CONTACT_API_URL"))

    sender = WebPushSenderSettings(
        type=get("sender", "type", os.getenv("WPD_SENDER_TYPE", "default")),
        queue_name=get("sender", "queue_name", os.getenv("WPD_QUEUE_NAME", DEFAULT_QUEUE_NAME)),
        push_api_url=get("sender", "push_api_url", os.getenv("WPD_PUSH_API_URL", "http://localhost:8080")),
        push_contact_api_url=push_contact_api_url,
        action_click_event_endpoint_path=get(
            "sender",
            "action_click_event_endpoint_path",
            os.getenv("WPD_ACTION_CLICK_EVENT_ENDPOINT_PATH"),
        ),
        concurrency=get_int("sender", "concurrency", os.getenv("WPD_SENDER_CONCURRENCY"), default=10),
        request_timeout=get_float("sender", "request_timeout", os.getenv("WPD_REQUEST_TIMEOUT"), default=30.0),
    )
    publisher = WebPushPublisherSettings(
        batch_size=get_int("publisher", "batch_size", os.getenv("WPD_BATCH_SIZE"), default=DEFAULT_BATCH_SIZE),
        push_contact_api_url=push_contact_api_url,
        clicked_event_endpoint_path=get(
            "publisher", "clicked_event_endpoint_path", os.getenv("WPD_CLICKED_EVENT_ENDPOINT_PATH")
        ),
        received_event_endpoint_path=get(
            "publisher", "received_event_endpoint_path", os.getenv("WPD_RECEIVED_EVENT_ENDPOINT_PATH")
        ),
        push_endpoint_mappings=get_json(
            "publisher", "push_endpoint_mappings", os.getenv("WPD_PUSH_ENDPOINT_MAPPINGS")
        ),
    )

    settings: dict[str, object] = {
        "db_path": get("storage", "db_path", os.getenv("WPD_DB_PATH", "/data/webpush_dispatch.db")),
        "http_host": get("server", "host", os.getenv("WPD_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("WPD_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("WPD_API_TOKEN")),
        "token_key": get("security", "token_key", os.getenv("WPD_TOKEN_KEY")),
        "sender": sender,
        "publisher": publisher,
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "token_key"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings
