import hmac
import hashlib
import json
from urllib.parse import urlencode


def build_query(params: dict) -> str:
    return urlencode(params, doseq=True)


def canonical_body(body: dict | None) -> str:
    if not body:
        return ""
    return json.dumps(body, separators=(",", ":"), sort_keys=True)


def string_to_sign(timestamp_ms: int, method: str, path: str, query: str, body: str) -> str:
    path_q = f"{path}?{query}" if query else path
    return f"{timestamp_ms}{method.upper()}{path_q}{body}"


def sign(secret: str, payload: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
