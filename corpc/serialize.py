"""
Wire format and error marshaling for corpc.

Calls and results travel as positional lists:

    call:   [name, call_id, False, *args]
    result: [name, call_id, True, was_successful, payload]

Field types are the only validation performed on receipt. Text based
transports carry the same lists as JSON arrays.
"""

import json
from collections.abc import Mapping
from typing import Any, List, Optional

CALL_HEADER_LENGTH = 3
RESULT_LENGTH = 5


def _is_sequence(message: Any) -> bool:
    return isinstance(message, (list, tuple))


def _is_call_id(value: Any) -> bool:
    # bool is an int subclass but never a valid id
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def call_message(name: str, call_id: int, args: Any = ()) -> List[Any]:
    """Build a call message for ``name`` with positional ``args``."""
    return [name, call_id, False, *args]


def result_message(name: str, call_id: int, was_successful: bool, payload: Any) -> List[Any]:
    """Build a result message answering call ``call_id`` of ``name``."""
    return [name, call_id, True, was_successful, payload]


def is_call_message(message: Any) -> bool:
    """Return True if ``message`` has the exact shape of a call message."""
    if not _is_sequence(message) or len(message) < CALL_HEADER_LENGTH:
        return False

    name, call_id, is_result = message[0], message[1], message[2]
    return isinstance(name, str) and _is_call_id(call_id) and is_result is False


def is_result_message(message: Any) -> bool:
    """Return True if ``message`` has the exact shape of a result message."""
    if not _is_sequence(message) or len(message) != RESULT_LENGTH:
        return False

    name, call_id, is_result, was_successful, _ = message
    return (
        isinstance(name, str)
        and _is_call_id(call_id)
        and is_result is True
        and isinstance(was_successful, bool)
    )


def extract_error(error: Any) -> Optional[str]:
    """
    Reduce a raised failure to a value that survives the channel.

    Rich exception objects cannot cross a structured-data channel, so only
    the message is kept. Returns ``None`` when nothing usable is found.
    """
    if error is None:
        return None

    if isinstance(error, str):
        return error

    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message

    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        return error["message"]

    if isinstance(error, BaseException):
        return str(error)

    return None


def serialize(message: Any) -> str:
    """Encode a message as JSON text."""
    return json.dumps(message)


def deserialize(text: Any) -> Any:
    """Decode JSON text (or UTF-8 bytes) into a message."""
    if isinstance(text, (bytes, bytearray)):
        text = text.decode("utf-8")
    return json.loads(text)
