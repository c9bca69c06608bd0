"""
Identity Resolver

Resolves a stable anonymous identity for a caller.

An existing durable token is echoed back untouched; otherwise a new
UUIDv4-shaped identifier is minted together with a cookie directive the
caller must store.

DESIGN RULES:
- Never throws (random-source failures fall through to the next source)
- Idempotent: a resolved identity is never re-issued
- No I/O beyond the header value it is handed
"""

import hashlib
import itertools
import logging
import os
import random
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from identity.cookies import serialize_identity_cookie

logger = logging.getLogger(__name__)

RandomSource = Callable[[], bytes]

_UUID_BYTES = 16
_fallback_counter = itertools.count()


@dataclass(frozen=True)
class IdentityResolution:
    """Outcome of resolving an identity."""
    identity: str
    set_token: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return self.set_token is not None


def format_uuid4(raw: bytes) -> str:
    """Force version/variant bits on 16 raw bytes and format as 8-4-4-4-12 hex."""
    data = bytearray(raw[:_UUID_BYTES])
    data[6] = (data[6] & 0x0F) | 0x40  # version 4
    data[8] = (data[8] & 0x3F) | 0x80  # variant 10
    h = data.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def _uuid4_source() -> bytes:
    return uuid.uuid4().bytes


def _secrets_source() -> bytes:
    return secrets.token_bytes(_UUID_BYTES)


def _mersenne_source() -> bytes:
    # Not cryptographically strong.
    return random.getrandbits(128).to_bytes(_UUID_BYTES, "big")


def _low_entropy_bytes() -> bytes:
    seed = f"{time.time_ns()}:{os.getpid()}:{next(_fallback_counter)}:{id(object())}"
    return hashlib.sha256(seed.encode("utf-8")).digest()[:_UUID_BYTES]


DEFAULT_RANDOM_SOURCES: List[RandomSource] = [
    _uuid4_source,
    _secrets_source,
    _mersenne_source,
]


def generate_identity(sources: Optional[Sequence[RandomSource]] = None) -> str:
    """
    Mint a UUIDv4-shaped identifier.

    Sources are tried in order; one that raises or returns fewer than 16
    bytes is skipped. The last resort is a time/pid/counter digest.
    """
    for source in sources if sources is not None else DEFAULT_RANDOM_SOURCES:
        try:
            raw = source()
        except Exception as e:
            logger.debug(f"Random source {getattr(source, '__name__', source)!r} failed: {e}")
            continue
        if isinstance(raw, (bytes, bytearray)) and len(raw) >= _UUID_BYTES:
            return format_uuid4(bytes(raw))

    logger.warning("All random sources unavailable, using low-entropy identity fallback")
    return format_uuid4(_low_entropy_bytes())


class IdentityResolver:
    """
    Resolves caller identity from an inbound durable token.

    Usage:
        resolver = IdentityResolver(cookie_name="chatkit_session_id", secure=True)
        resolution = resolver.resolve(token_from_cookie)
    """

    def __init__(
        self,
        cookie_name: str = "chatkit_session_id",
        secure: bool = False,
        random_sources: Optional[Sequence[RandomSource]] = None,
    ):
        """
        Args:
            cookie_name: Name of the identity cookie
            secure: Append the Secure attribute (production deployments)
            random_sources: Ordered random byte sources, strongest first
        """
        self._cookie_name = cookie_name
        self._secure = secure
        self._sources = list(random_sources) if random_sources is not None else None

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    def resolve(self, inbound_token: Optional[str]) -> IdentityResolution:
        token = inbound_token.strip() if isinstance(inbound_token, str) else ""
        if token:
            return IdentityResolution(identity=inbound_token)

        identity = generate_identity(self._sources)
        return IdentityResolution(
            identity=identity,
            set_token=serialize_identity_cookie(self._cookie_name, identity, secure=self._secure),
        )
