"""Best-effort parsing of incomplete JSON.

Structured streams arrive as JSON text deltas. To emit partial objects
while the model is still writing, the prefix received so far is closed
(open string, open arrays/objects) and parsed. A prefix that ends inside
a number, literal or key is cut back to the last comma and retried.
"""

import json
from typing import Any


def parse_partial_json(text: str) -> Any | None:
    """Parse a JSON prefix.

    Args:
        text: JSON text received so far.

    Returns:
        The parsed value of the repaired prefix, or None when nothing
        usable can be recovered yet.
    """
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    repaired, last_comma = _close_prefix(text)
    if repaired is not None:
        try:
            return json.loads(repaired)
        except ValueError:
            pass

    if last_comma > 0:
        repaired, _ = _close_prefix(text[:last_comma])
        if repaired is not None:
            try:
                return json.loads(repaired)
            except ValueError:
                return None
    return None


def _close_prefix(text: str) -> tuple[str | None, int]:
    """Append the closers a JSON prefix is missing.

    Returns:
        (repaired text or None when the prefix is malformed, index of the
        last comma outside strings or -1).
    """
    closers: list[str] = []
    in_string = False
    escaped = False
    last_comma = -1

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]":
            if not closers or closers[-1] != char:
                return None, last_comma
            closers.pop()
        elif char == ",":
            last_comma = index

    body = text
    if in_string:
        if escaped:
            body = body[:-1]
        body += '"'
    body = body.rstrip()
    if body.endswith(","):
        body = body[:-1]
    elif body.endswith(":"):
        body += " null"
    return body + "".join(reversed(closers)), last_comma
