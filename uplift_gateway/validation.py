"""Structural validation of the /ai-proxy request body.

Runs before any credential, quota or credit check so that malformed requests
never touch shared state. Each failure raises the error whose message the
client sees.
"""

import json
from typing import Any, Container, Dict, List

from uplift_gateway.config import ValidationLimits
from uplift_gateway.errors import UnsupportedProviderError, ValidationError
from uplift_gateway.models import CanonicalRequest, ChatMessage

ALLOWED_ROLES = frozenset({"system", "user", "assistant"})

BODY_REQUIRED = "Request body is required"
FIELDS_REQUIRED = "Provider, messages, and userId are required"
MESSAGES_NOT_LIST = "Messages must be a non-empty array"
INVALID_MESSAGE = "Invalid message format"


def parse_body(raw: bytes) -> Dict[str, Any]:
    """Decode the raw request body into a JSON object.

    Raises:
        ValidationError: If the body is empty, not JSON, or not an object.
    """
    if not raw or not raw.strip():
        raise ValidationError(BODY_REQUIRED)
    try:
        body = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError(BODY_REQUIRED, detail="Unparseable JSON: {}".format(exc))
    if not isinstance(body, dict) or not body:
        raise ValidationError(BODY_REQUIRED)
    return body


def _validate_messages(raw_messages: Any, limits: ValidationLimits) -> List[ChatMessage]:
    if not isinstance(raw_messages, list) or not raw_messages:
        raise ValidationError(MESSAGES_NOT_LIST)

    if len(raw_messages) > limits.max_messages:
        raise ValidationError(
            INVALID_MESSAGE,
            detail="{} messages exceeds maximum of {}".format(
                len(raw_messages), limits.max_messages
            ),
        )

    messages: List[ChatMessage] = []
    total_chars = 0
    for index, msg in enumerate(raw_messages):
        if not isinstance(msg, dict):
            raise ValidationError(INVALID_MESSAGE, detail="message {} is not an object".format(index))
        role = msg.get("role")
        content = msg.get("content")
        if role not in ALLOWED_ROLES:
            raise ValidationError(INVALID_MESSAGE, detail="message {} has role {!r}".format(index, role))
        if not isinstance(content, str) or not content:
            raise ValidationError(INVALID_MESSAGE, detail="message {} has no content".format(index))
        if len(content) > limits.max_content_chars:
            raise ValidationError(
                INVALID_MESSAGE,
                detail="message {} is {} chars (max {})".format(
                    index, len(content), limits.max_content_chars
                ),
            )
        total_chars += len(content)
        messages.append(ChatMessage(role=role, content=content))

    if total_chars > limits.max_total_chars:
        raise ValidationError(
            INVALID_MESSAGE,
            detail="conversation is {} chars (max {})".format(
                total_chars, limits.max_total_chars
            ),
        )
    return messages


def validate_request(
    body: Dict[str, Any],
    supported_providers: Container[str],
    limits: ValidationLimits,
) -> CanonicalRequest:
    """Validate a decoded body and build the canonical request.

    Args:
        body: The decoded JSON object.
        supported_providers: Lower-cased names of configured providers.
        limits: Message count and size ceilings.

    Returns:
        The CanonicalRequest, with the provider name lower-cased.

    Raises:
        ValidationError: On any structural problem.
        UnsupportedProviderError: If the provider is not configured.
    """
    provider = body.get("provider")
    raw_messages = body.get("messages")
    user_id = body.get("userId")

    if not provider or raw_messages is None or not user_id:
        raise ValidationError(FIELDS_REQUIRED)
    if not isinstance(provider, str) or not isinstance(user_id, str):
        raise ValidationError(FIELDS_REQUIRED)

    messages = _validate_messages(raw_messages, limits)

    provider_key = provider.strip().lower()
    if provider_key not in supported_providers:
        raise UnsupportedProviderError(detail="Unsupported provider {!r}".format(provider))

    timestamp = body.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = None

    return CanonicalRequest(
        provider=provider_key,
        messages=messages,
        user_id=user_id,
        timestamp=timestamp,
    )
