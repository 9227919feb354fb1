"""Utility functions and helpers shared by the link and engine code.

This module provides common utilities used across the package including:
- Deep search over decoded settings blobs
- Base64 and traffic formatting helpers
- The random source used for Reality parameters
- Panel response validation
- The exception types raised by the package
"""

import base64
import logging
import secrets
import string
from typing import TypeAlias, Union, Dict, Any, List

import httpx

JsonType: TypeAlias = Union[Dict[Any, Any], List[Any]]

logger = logging.getLogger(__name__)

_SEQ_CHARS = string.ascii_letters + string.digits
_TRAFFIC_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")
_MISSING = object()


def search_key(data: Any, key: str) -> Any:
    """Find the first value stored under ``key`` anywhere inside ``data``.

    The walk is depth-first: every mapping entry is checked in order, and a
    non-matching entry is searched recursively before moving on to the next
    one. Lists are walked element by element.

    Args:
        data: A decoded JSON structure (dicts, lists and scalars).
        key: The key name to look for.

    Returns:
        The value under the first matching key (which may itself be None),
        or None if the key does not occur.

    Examples:
        >>> search_key({"a": {"fingerprint": "chrome"}, "fingerprint": "x"}, "fingerprint")
        'chrome'
        >>> search_key([{"b": 1}, {"serverName": "a.com"}], "serverName")
        'a.com'
    """
    found = _search(data, key)
    return None if found is _MISSING else found


def _search(data: Any, key: str) -> Any:
    if isinstance(data, dict):
        for k, v in data.items():
            if k == key:
                return v
            found = _search(v, key)
            if found is not _MISSING:
                return found
    elif isinstance(data, list):
        for v in data:
            found = _search(v, key)
            if found is not _MISSING:
                return found
    return _MISSING


def search_host(headers: Any) -> str:
    """Pull the ``Host`` header out of a header mapping.

    The key is matched case-insensitively. A list value yields its first
    element. Anything unexpected yields an empty string.

    Examples:
        >>> search_host({"host": ["a.com", "b.com"]})
        'a.com'
        >>> search_host(None)
        ''
    """
    if not isinstance(headers, dict):
        return ""
    for k, v in headers.items():
        if k.lower() != "host":
            continue
        if isinstance(v, list):
            return str(v[0]) if v else ""
        if isinstance(v, str):
            return v
        return ""
    return ""


def base64_from_string(string: str, omit_trailing_equals: bool = False) -> str:
    """Encode a string to standard base64.

    Args:
        string: The input string to encode.
        omit_trailing_equals: If True, removes trailing '=' padding characters.

    Returns:
        The base64 encoded string.

    Examples:
        >>> base64_from_string("hello")
        'aGVsbG8='
        >>> base64_from_string("hello", omit_trailing_equals=True)
        'aGVsbG8'
    """
    encoded = base64.b64encode(str(string).encode("utf-8")).decode()
    if omit_trailing_equals:
        return encoded.rstrip("=")
    return encoded


def format_traffic(traffic_bytes: int) -> str:
    """Render a byte count with a binary unit and two decimals.

    Examples:
        >>> format_traffic(1536)
        '1.50KB'
        >>> format_traffic(10 * 1024 ** 3)
        '10.00GB'
    """
    size = float(traffic_bytes)
    unit = 0
    while size >= 1024 and unit < len(_TRAFFIC_UNITS) - 1:
        size /= 1024
        unit += 1
    return f"{size:.2f}{_TRAFFIC_UNITS[unit]}"


class RandomSource:
    """Uniform random choices for Reality links.

    Backed by ``secrets`` so repeated links for one client cannot be
    predicted. Tests pass a subclass with fixed answers.
    """

    def num(self, n: int) -> int:
        """Return an index in ``range(n)``."""
        return secrets.randbelow(n)

    def seq(self, n: int) -> str:
        """Return ``n`` random letters and digits."""
        return "".join(secrets.choice(_SEQ_CHARS) for _ in range(n))


def check_xui_response_validity(response: JsonType | httpx.Response) -> str:
    """Validate a 3X-UI API response.

    Checks if the response follows the expected 3X-UI API format with
    'success', 'msg', and 'obj' keys, and determines the response status.

    Args:
        response: Either a JSON response dict or an httpx Response object.

    Returns:
        str: One of three status strings:
            - "OK": Response is valid and successful.
            - "DB_LOCKED": Database is locked, operation should be retried.
            - "ERROR": Operation was unsuccessful.

    Raises:
        RuntimeError: If the response doesn't match the expected 3X-UI format.
    """
    if isinstance(response, httpx.Response):
        json_resp = response.json()
    else:
        json_resp = response

    if isinstance(json_resp, dict) and {"success", "msg", "obj"} <= json_resp.keys():
        success: bool = json_resp["success"]
        msg: str = json_resp["msg"] or ""
        if success:
            return "OK"
        if "database" in msg.lower() and "locked" in msg.lower():
            logger.warning("Database is locked, retrying...")
            return "DB_LOCKED"
        logger.error("Unsuccessful operation! Message: %s", msg)
        return "ERROR"
    raise RuntimeError("Validator got something very unexpected (not a 3X-UI response body)")


class DBLockedError(Exception):
    """Raised when the panel database stays locked past the retry budget."""

    def __init__(self, message: str):
        super().__init__(message)


class NotFoundError(LookupError):
    """No inbound carries a client with the requested subscription id."""


class MalformedConfigError(ValueError):
    """The engine template or a stored settings blob is not valid JSON."""


class ProcessStateError(RuntimeError):
    """The engine process is not in a state that allows the operation."""


class UnavailableError(RuntimeError):
    """The engine is not running, so its management API cannot be reached."""
