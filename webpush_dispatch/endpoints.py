"""Queue routing and interaction callback URLs for push tasks."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from .encryption import encrypt_token

QUEUE_NAME_SUFFIX = "webpush.queue"
DEFAULT_QUEUE_NAME = f"default.{QUEUE_NAME_SUFFIX}"


def get_queue_name(endpoint: Optional[str], mappings: Optional[Mapping[str, Iterable[str]]]) -> str:
    """Return the queue serving ``endpoint``, chosen by case-insensitive URL prefix."""
    if endpoint:
        lowered = endpoint.lower()
        for name, prefixes in (mappings or {}).items():
            for prefix in prefixes:
                if prefix and lowered.startswith(prefix.lower()):
                    return f"{name}.{QUEUE_NAME_SUFFIX}"
    return DEFAULT_QUEUE_NAME


def build_event_endpoint(
    template: Optional[str],
    push_contact_api_url: Optional[str],
    push_contact_id: Optional[str],
    message_id: Optional[str],
    token_key: Optional[bytes],
    action_name: Optional[str] = None,
) -> Optional[str]:
    """Fill a callback URL template.

    Supported placeholders: ``[pushContactApiUrl]``, ``[encryptedContactId]``,
    ``[encryptedMessageId]`` and ``[actionName]``. Returns ``None`` when any
    required input is missing.
    """
    if not (template and push_contact_api_url and push_contact_id and message_id and token_key):
        return None
    endpoint = (
        template.replace("[pushContactApiUrl]", push_contact_api_url)
        .replace("[encryptedContactId]", encrypt_token(push_contact_id, token_key))
        .replace("[encryptedMessageId]", encrypt_token(message_id, token_key))
    )
    if action_name:
        endpoint = endpoint.replace("[actionName]", action_name)
    return endpoint


def build_action_event_endpoints(
    template: Optional[str],
    push_contact_api_url: Optional[str],
    push_contact_id: Optional[str],
    message_id: Optional[str],
    token_key: Optional[bytes],
    action_names: Iterable[str],
) -> Dict[str, Optional[str]]:
    """Return one callback URL per action name."""
    return {
        name: build_event_endpoint(template, push_contact_api_url, push_contact_id, message_id, token_key, name)
        for name in action_names
    }
