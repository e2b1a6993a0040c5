"""Wire format helpers for the Varnish administrative CLI protocol.

Every message from the daemon starts with a header line ``SSS LLLLLLLL`` (status
code and body length) followed by the body and a trailing newline. Status 107 is
the authentication challenge sent right after connecting.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any

STATUS_OK = 200
STATUS_AUTH_CHALLENGE = 107

HELP_SUFFIX = "\nType 'help' for more info."

_HEADER_PATTERN = re.compile(r"^(\d{3})(?:\s+(\d+))?\s*$")
_STATUS_PATTERN = re.compile(r"^(\d{3})")
# vcl.list -j on some daemon versions ends its array with ",\n\n]"
_MALFORMED_LIST_TAIL = re.compile(r",\n\n]$")


@dataclass(frozen=True)
class AdminResponse:
    status: int
    body: Any


@dataclass(frozen=True)
class MessageHeader:
    status: int
    length: int | None


def parse_header(line: str) -> MessageHeader | None:
    match = _HEADER_PATTERN.match(line.strip())
    if not match:
        return None
    length = int(match.group(2)) if match.group(2) is not None else None
    return MessageHeader(status=int(match.group(1)), length=length)


def parse_response(message: str) -> AdminResponse:
    match = _STATUS_PATTERN.match(message)
    status = int(match.group(1)) if match else 0
    newline = message.find("\n")
    raw_body = message[newline:] if newline >= 0 else ""
    return AdminResponse(status=status, body=decode_body(status, raw_body.strip()))


def decode_body(status: int, text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        pass

    if status == STATUS_OK:
        patched = _MALFORMED_LIST_TAIL.sub("]", text)
        try:
            return json.loads(patched)
        except ValueError:
            pass

    return text


def challenge_token(body: str) -> str:
    return body.split("\n", 1)[0].strip()


def sign_challenge(challenge: str, secret: str) -> str:
    payload = f"{challenge}\n{secret}{challenge}\n"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def auth_line(challenge: str, secret: str) -> str:
    return f"auth {sign_challenge(challenge, secret)}\n"


def clean_error_message(body: Any) -> str:
    if not isinstance(body, str):
        return json.dumps(body)
    return body.replace(HELP_SUFFIX, "").strip()
