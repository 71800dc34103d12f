"""
Serialization of event payloads and snapshot state to the blobs stored on disk.

Payloads are JSON encoded. Snapshots are additionally zlib-compressed, and
both can be encrypted at rest with a Fernet key.
"""
import json
import zlib
from datetime import date, datetime
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken

from .errors import EventDecodingError


def _default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class PayloadCodec:
    def __init__(self, key: bytes | str | None = None, compress: bool = False):
        self.fernet = Fernet(key) if key else None
        self.compress = compress

    def encode(self, obj: Dict[str, Any]) -> bytes:
        data = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_default).encode("utf-8")
        if self.compress:
            data = zlib.compress(data)
        if self.fernet:
            data = self.fernet.encrypt(data)
        return data

    def decode(self, blob: bytes) -> Dict[str, Any]:
        try:
            if self.fernet:
                blob = self.fernet.decrypt(blob)
            if self.compress:
                blob = zlib.decompress(blob)
            return json.loads(blob.decode("utf-8"))
        except (InvalidToken, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EventDecodingError(f"Cannot decode stored blob: {e!r}") from e


def payload_codec(key: bytes | str | None = None) -> PayloadCodec:
    return PayloadCodec(key)


def snapshot_codec(key: bytes | str | None = None) -> PayloadCodec:
    return PayloadCodec(key, compress=True)
