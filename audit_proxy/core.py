"""
Pure decision helpers for the proxy pipeline.

Nothing in here touches the network or shared state, so route parsing,
audit-text extraction and verdict interpretation can be tested in isolation.
"""
import base64
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import unquote

from audit_proxy.config import SiteConfig

AUDIT_METHOD = "POST"
MAX_MESSAGE_CHARS = 500
URL_ENCODE_MAX_CHARS = 200
MESSAGE_DELIMITER = ","
PROBE_CONTENT = "hi"
PROBE_REPLY = "Hello! The audit proxy is up and running."

_ABSOLUTE_URL_RE = re.compile(r"^(https?://[^/]+)(/.*)?$")
_WHITESPACE_RE = re.compile(r"[\s\x00-\x1f\x7f]+")


# --- route parsing ---------------------------------------------------------

@dataclass(frozen=True)
class NamedRoute:
    site_id: str
    sub_path: str


@dataclass(frozen=True)
class DirectOrigin:
    origin: str
    sub_path: str


@dataclass(frozen=True)
class InvalidTarget:
    reason: str


RouteTarget = Union[NamedRoute, DirectOrigin, InvalidTarget]


def parse_proxy_path(path: str, prefix: str = "/proxy") -> Optional[RouteTarget]:
    """
    Split a proxied request path into its routing target.

    Returns None when the path is not under ``prefix`` at all.
    """
    head = prefix.rstrip("/") + "/"
    if not path.startswith(head):
        return None

    rest = path[len(head):]
    if rest.startswith("http://") or rest.startswith("https://"):
        m = _ABSOLUTE_URL_RE.match(rest)
        if not m:
            return InvalidTarget(f"Invalid proxy URL: {rest}")
        return DirectOrigin(origin=m.group(1), sub_path=m.group(2) or "/")

    parts = rest.split("/")
    return NamedRoute(site_id=parts[0], sub_path="/" + "/".join(parts[1:]))


def extract_credential(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


# --- audit text ------------------------------------------------------------

def should_audit(sub_path: str, method: str, site: SiteConfig) -> bool:
    # compared decoded so an encoded audit path cannot slip past the classifier
    return unquote(sub_path) == site.audit_path and method.upper() == AUDIT_METHOD


def normalize_message(content: str) -> str:
    return _WHITESPACE_RE.sub(" ", content).strip()[:MAX_MESSAGE_CHARS]


def _text_messages(body: Any, parameter: str) -> List[Tuple[str, str]]:
    if not isinstance(body, dict):
        return []
    messages = body.get(parameter)
    if not isinstance(messages, list):
        return []

    out = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        content = msg.get("content")
        if not isinstance(content, str):
            continue
        out.append((str(msg.get("role", "")), content))
    return out


def extract_audit_text(body: Any, parameter: str) -> str:
    """
    Flatten the message list into ``role:content`` pairs for the classifier.

    Non-text contents are dropped; anything malformed yields an empty string.
    """
    return MESSAGE_DELIMITER.join(
        f"{role}:{normalize_message(content)}" for role, content in _text_messages(body, parameter)
    )


def format_transcript(body: Any, parameter: str) -> str:
    return "\n".join(f"{role}: {content}" for role, content in _text_messages(body, parameter))


def classifier_query(text: str) -> Tuple[str, str]:
    """
    Pick the classifier endpoint and ``word`` value for ``text``.

    Short ASCII text is sent URL-encoded; anything else goes base64 so the
    query string stays well-formed.
    """
    if text.isascii() and len(text) <= URL_ENCODE_MAX_CHARS:
        return "/", text
    return "/base64", base64.b64encode(text.encode("utf-8")).decode("ascii")


# --- verdicts --------------------------------------------------------------

@dataclass(frozen=True)
class AuditVerdict:
    status: str
    verdict: str
    rule_id: Optional[str] = None
    description: Optional[str] = None
    match_string: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["AuditVerdict"]:
        if not isinstance(payload, dict):
            return None
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        rule_id = payload.get("rule_id")
        return cls(
            status=str(payload.get("status", "")),
            verdict=str(payload.get("verdict", "")),
            rule_id=str(rule_id) if rule_id is not None else None,
            description=data.get("descr"),
            match_string=data.get("match_string"),
        )


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Block:
    verdict: AuditVerdict


@dataclass(frozen=True)
class Degraded:
    cause: str


AuditOutcome = Union[Allow, Block, Degraded]


def decide_outcome(verdict: Optional[AuditVerdict]) -> AuditOutcome:
    if verdict is None:
        return Degraded("classifier unavailable")
    if verdict.status != "done":
        return Degraded(f"classifier returned status '{verdict.status}'")
    if verdict.verdict == "malicious":
        return Block(verdict)
    return Allow()


def block_message(verdict: AuditVerdict, violation_count: Optional[int], max_violations: int, banned: bool) -> str:
    message = verdict.description or "Content blocked by security policy"
    if max_violations <= 0 or violation_count is None:
        return message
    if banned:
        return f"{message} (violation limit reached, access suspended)"
    remaining = max(max_violations - violation_count, 0)
    return f"{message} ({remaining} violation(s) left before suspension)"


# --- synthetic probe -------------------------------------------------------

def is_probe_request(body: Any, parameter: str) -> bool:
    if not isinstance(body, dict):
        return False
    messages = body.get(parameter)
    if not isinstance(messages, list) or len(messages) != 1:
        return False
    msg = messages[0]
    return isinstance(msg, dict) and msg.get("role") == "user" and msg.get("content") == PROBE_CONTENT


def probe_completion(body: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
    created = int(now if now is not None else time.time())
    return {
        "id": f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": created,
        "model": body.get("model", ""),
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": PROBE_REPLY},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }


def probe_stream_events(body: Dict[str, Any], now: Optional[float] = None) -> List[str]:
    """SSE frames for the streaming probe reply, ending with ``[DONE]``."""
    created = int(now if now is not None else time.time())
    chunk_id = f"chatcmpl-{uuid.uuid4().hex}"
    model = body.get("model", "")

    def chunk(delta: Dict[str, Any], finish_reason: Optional[str]) -> str:
        payload = {
            "id": chunk_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

    return [
        chunk({"role": "assistant", "content": ""}, None),
        chunk({"content": PROBE_REPLY}, None),
        chunk({}, "stop"),
        "data: [DONE]\n\n",
    ]
