"""Global hostname allocation."""

import os
import threading
import time
from typing import Optional

from .errors import ConfigError
from .models import DNS_LABEL

# base32hex, lowercase; keeps ids sortable and valid as a DNS label
_ALPHABET = "0123456789abcdefghijklmnopqrstuv"

_machine = os.urandom(5)
_counter = int.from_bytes(os.urandom(3), "big")
_counter_lock = threading.Lock()


def new_id(now: Optional[float] = None) -> str:
    """Return a 20 character, time-sortable, globally unique identifier.

    Layout (12 bytes): 4 bytes of unix seconds, 5 random bytes fixed for the
    process, 3 bytes of a wrapping counter.
    """
    global _counter
    seconds = int(time.time() if now is None else now) & 0xFFFFFFFF
    with _counter_lock:
        _counter = (_counter + 1) & 0xFFFFFF
        count = _counter

    raw = seconds.to_bytes(4, "big") + _machine + count.to_bytes(3, "big")
    value = int.from_bytes(raw, "big")
    # 96 bits -> 20 symbols of 5 bits (last symbol padded by 4 bits)
    value <<= 4
    chars = []
    for _ in range(20):
        chars.append(_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def allocate(existing: Optional[str], domain: str) -> str:
    """Return the global hostname for an ingress.

    An existing allocation is returned unchanged; otherwise a new
    ``<id>.<domain>`` is generated.

    Raises:
        ConfigError: If the domain is empty or not a valid DNS name.
    """
    if existing:
        return existing

    domain = (domain or "").strip().strip(".").lower()
    labels = domain.split(".") if domain else []
    if not labels or not all(DNS_LABEL.match(label) for label in labels):
        raise ConfigError(f"cannot allocate hostname: invalid domain {domain!r}")

    return f"{new_id()}.{domain}"
