from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from starlette.requests import Request

from src.shared.config import get_settings

ANONYMOUS_USER = "anonymous"

_PLACEHOLDER = re.compile(r"\{(?:(body|query|params)\.)?(\w+)\}")


@dataclass
class RequestSnapshot:
    """The parts of an inbound request that interceptors key on."""
    method: str = "GET"
    path: str = "/"
    user_id: str = ANONYMOUS_USER
    body: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def lookup(self, source: Optional[str], name: str) -> Any:
        """Value of ``name`` in ``source``; without a source try params, body, query."""
        if source:
            return getattr(self, source).get(name)
        for bucket in (self.params, self.body, self.query):
            value = bucket.get(name)
            if value is not None:
                return value
        return None

    def digest(self) -> str:
        payload = {"query": self.query, "body": self.body, "params": self.params}
        raw = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    @classmethod
    async def from_request(cls, request: Request) -> "RequestSnapshot":
        return cls(
            method=request.method,
            path=request.url.path,
            user_id=_user_id(request),
            body=await _json_body(request),
            query=dict(request.query_params),
            params=dict(request.path_params),
        )


def resolve_key_template(template: str, snapshot: RequestSnapshot) -> str:
    """
    Substitute placeholders in ``template``:
      {body.x} {query.x} {params.x}  read one source
      {x}                            params, then body, then query
    Missing values become the empty string.
    """
    def _sub(match: "re.Match[str]") -> str:
        value = snapshot.lookup(match.group(1), match.group(2))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


def _user_id(request: Request) -> str:
    user = getattr(request.state, "user", None)
    if isinstance(user, Mapping):
        value = user.get("user_id")
    else:
        value = getattr(user, "user_id", None)
    value = value or getattr(request.state, "user_id", None) or request.headers.get(get_settings().USER_HEADER)
    return str(value) if value else ANONYMOUS_USER


async def _json_body(request: Request) -> Dict[str, Any]:
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return {}
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}
