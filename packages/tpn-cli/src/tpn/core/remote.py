"""Decoding of /api/config/new responses.

The endpoint answers with either a WireGuard config in text form or an error
payload such as {"error":"insufficient lease"}. The body is decoded once,
here, into a tagged result so nothing downstream pattern-matches raw text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Literal, Union

# Error payload embedded anywhere in the body, e.g. inside a wrapper object
ERROR_MARKER_PATTERN = re.compile(r'"error"\s*:\s*"((?:[^"\\]|\\.)*)"')


@dataclass(frozen=True)
class RemoteConfig:
    """A tunnel configuration ready to be written to disk."""

    body: str
    kind: Literal["config"] = "config"


@dataclass(frozen=True)
class RemoteError:
    """An error reported by the endpoint in place of a configuration."""

    message: str
    kind: Literal["error"] = "error"


RemoteResult = Union[RemoteConfig, RemoteError]


def _json_error(body: str):
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and "error" in payload:
        error = payload["error"]
        if isinstance(error, dict):
            error = error.get("message", json.dumps(error))
        return str(error)
    return None


def decode_config_response(body: str) -> RemoteResult:
    """
    Classify a config endpoint response body.

    Args:
        body: Raw response text

    Returns:
        RemoteError when the body is empty or carries an "error" entry,
        RemoteConfig otherwise
    """
    if not body.strip():
        return RemoteError("empty configuration received")

    message = _json_error(body.strip())
    if message is not None:
        return RemoteError(message)

    match = ERROR_MARKER_PATTERN.search(body)
    if match:
        try:
            message = json.loads(f'"{match.group(1)}"')
        except ValueError:
            # Invalid escapes or raw control characters: keep the text as sent
            message = match.group(1)
        return RemoteError(message)

    return RemoteConfig(body)
