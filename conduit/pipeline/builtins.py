"""
Built-in step providers.

In-process providers addressable as `builtin:<name>` (or a bare name). Each
takes `(payload, ctx)` and returns the step output. The value transforms
operate on the `value` field of a mapping payload, which is the shape
column transforms hand them, and return the payload with `value` replaced;
given a scalar they transform it directly.

    identity      pass the payload through
    null          replace the value with None
    trim          strip surrounding whitespace
    lower/upper   change case
    sha256        hex SHA-256 digest (aliases: hash1, bcrypt1, bcrypt2)
    hmac_sha256   keyed digest, key from env COLUMN_HASH_KEY
"""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import TYPE_CHECKING, Any, Callable

from conduit.errors import ProviderInvocationError

if TYPE_CHECKING:
    from .context import ExecutionContext

HASH_KEY_VARIABLE = "COLUMN_HASH_KEY"


def _map_value(payload: Any, fn: Callable[[Any], Any]) -> Any:
    if isinstance(payload, dict) and "value" in payload:
        return {**payload, "value": fn(payload["value"])}
    return fn(payload)


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def identity(payload: Any, ctx: "ExecutionContext") -> Any:
    return payload


def null(payload: Any, ctx: "ExecutionContext") -> Any:
    return _map_value(payload, lambda _: None)


def trim(payload: Any, ctx: "ExecutionContext") -> Any:
    return _map_value(payload, lambda v: v.strip() if isinstance(v, str) else v)


def lower(payload: Any, ctx: "ExecutionContext") -> Any:
    return _map_value(payload, lambda v: v.lower() if isinstance(v, str) else v)


def upper(payload: Any, ctx: "ExecutionContext") -> Any:
    return _map_value(payload, lambda v: v.upper() if isinstance(v, str) else v)


def sha256(payload: Any, ctx: "ExecutionContext") -> Any:
    return _map_value(
        payload, lambda v: None if v is None else hashlib.sha256(_as_bytes(v)).hexdigest()
    )


def hmac_sha256(payload: Any, ctx: "ExecutionContext") -> Any:
    key = ctx.env.get(HASH_KEY_VARIABLE) or os.getenv(HASH_KEY_VARIABLE)
    if not key:
        raise ProviderInvocationError("hmac_sha256", f"{HASH_KEY_VARIABLE} is not set")

    def digest(v: Any) -> Any:
        if v is None:
            return None
        return hmac.new(key.encode("utf-8"), _as_bytes(v), hashlib.sha256).hexdigest()

    return _map_value(payload, digest)


BUILTINS: dict[str, Callable[[Any, "ExecutionContext"], Any]] = {
    "identity": identity,
    "null": null,
    "trim": trim,
    "lower": lower,
    "upper": upper,
    "sha256": sha256,
    "hash1": sha256,
    "bcrypt1": sha256,
    "bcrypt2": sha256,
    "hmac_sha256": hmac_sha256,
}
