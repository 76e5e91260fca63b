"""Parse cURL command lines and fill in ``{{placeholder}}`` templates.

:func:`parse_curl_command` is deliberately narrow. It understands the flags
people paste from API documentation and browser dev tools:

- ``-X`` / ``--request`` for the method (``GET`` by default, ``POST`` when a
  body is present and no method was given);
- the first ``http://`` or ``https://`` URL;
- every ``-H "Key: Value"`` header;
- one body from ``-d``, ``--data`` or ``--data-raw`` in single or double
  quotes.

Line continuations (``\\`` + newline) are joined first. It is not a shell
tokenizer: escaped or nested quotes, repeated ``-d`` flags and
``--data-binary`` are not handled.

Example::

    >>> parse_curl_command("curl https://api.example.com/me -H 'Accept: application/json'")
    ParsedCurlCommand(method='GET', url='https://api.example.com/me', headers={'Accept': 'application/json'}, body=None)
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from handshake.exceptions import ParseError
from handshake.models import ParsedCurlCommand

_CONTINUATION_RE = re.compile(r"\\\r?\n")
_METHOD_RE = re.compile(r"(?:-X|--request)\s+['\"]?(\w+)['\"]?")
_URL_PATTERNS = (
    re.compile(r"curl\s+['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"curl\s+(\S+)", re.IGNORECASE),
    re.compile(r"['\"]?(https?://[^\s'\"]+)['\"]?", re.IGNORECASE),
)
_HEADER_RE = re.compile(r"-H\s+['\"]([^'\"]+)['\"]")
_BODY_PATTERNS = tuple(
    re.compile(rf"{flag}\s+{quote}([^{quote}]+){quote}")
    for flag in ("-d", "--data", "--data-raw")
    for quote in ("'", '"')
)
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def normalize_command(command: str) -> str:
    """Join line continuations and strip surrounding whitespace."""
    return _CONTINUATION_RE.sub(" ", command).strip()


def parse_curl_command(command: str) -> ParsedCurlCommand:
    """Parse a cURL command line.

    Raises:
        ParseError: If the command contains no ``http(s)`` URL.
    """
    normalized = normalize_command(command)

    url = ""
    for pattern in _URL_PATTERNS:
        match = pattern.search(normalized)
        if match and match.group(1).lower().startswith("http"):
            url = match.group(1)
            break
    if not url:
        raise ParseError("Failed to parse URL from cURL command")

    method_match = _METHOD_RE.search(normalized)
    method = method_match.group(1).upper() if method_match else "GET"

    headers: dict[str, str] = {}
    for raw in _HEADER_RE.findall(normalized):
        key, sep, value = raw.partition(":")
        if sep and key.strip():
            headers[key.strip()] = value.strip()

    body = None
    for pattern in _BODY_PATTERNS:
        match = pattern.search(normalized)
        if match:
            body = match.group(1)
            if method_match is None:
                method = "POST"
            break

    return ParsedCurlCommand(method=method, url=url, headers=headers, body=body)


def substitute_placeholders(template: str, values: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` with ``values[key]``; unknown keys are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return str(values[key]) if key in values and values[key] is not None else match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


def extract_placeholders(template: str) -> list[str]:
    """Placeholder names in *template*, in order of first appearance."""
    return list(dict.fromkeys(_PLACEHOLDER_RE.findall(template)))


def substitute_command(
    parsed: ParsedCurlCommand, values: Mapping[str, Any]
) -> ParsedCurlCommand:
    """Apply :func:`substitute_placeholders` to the URL, header names and values, and body."""
    return ParsedCurlCommand(
        method=parsed.method,
        url=substitute_placeholders(parsed.url, values),
        headers={
            substitute_placeholders(k, values): substitute_placeholders(v, values)
            for k, v in parsed.headers.items()
        },
        body=substitute_placeholders(parsed.body, values) if parsed.body is not None else None,
    )
