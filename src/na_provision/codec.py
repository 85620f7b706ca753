"""Text-safe encoding for handshake messages sent over the serial link."""

import base64
import binascii
import json
from typing import Any


def encode_bytes(data: bytes) -> str:
    """Encode bytes as base64 text."""
    return base64.b64encode(data).decode("ascii")


def decode_bytes(text: str) -> bytes:
    """Decode base64 text back to bytes.

    Raises:
        ValueError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64 data: {e}") from e


def encode_message(message_type: str, **fields: Any) -> bytes:
    """Encode a handshake message as one newline-terminated JSON line.

    Bytes values are base64 encoded.
    """
    payload: dict[str, Any] = {"type": message_type}
    for name, value in fields.items():
        if isinstance(value, (bytes, bytearray)):
            value = encode_bytes(bytes(value))
        payload[name] = value
    return json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_message(line: bytes, expected_type: str, *required: str) -> dict[str, Any]:
    """Decode one JSON line and check its type and required fields.

    Args:
        line: Raw line read from the device
        expected_type: Value the "type" field must have
        required: Field names that must be present

    Returns:
        The decoded message

    Raises:
        ValueError: If the line is malformed or is not the expected message
    """
    try:
        message = json.loads(line.decode("utf-8").strip())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Malformed message: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Message is not a JSON object")
    if message.get("type") != expected_type:
        raise ValueError(f"Expected {expected_type!r} message, got {message.get('type')!r}")

    missing = [name for name in required if name not in message]
    if missing:
        raise ValueError(f"Message missing fields: {', '.join(missing)}")
    return message
