"""Time-sortable opaque identifiers.

Learn: Every entity (accounts, refresh tokens, posts...) gets a 22 character
id that is:

- Roughly ordered by creation time, even across processes.
- Lowercase Crockford base32 (no i, l, o, u) so it is safe in URLs and
  doesn't spell anything unfortunate.
- Free of any counter, so comparing two ids tells an outsider nothing about
  how many were issued in between (the "German tank problem").

Layout, 108 bits total:

    tttttttttt rrrrrrrrrrrr
    |          |
    |          └─ 12 chars = 60 random bits
    └─ 10 chars = 48 bit millisecond Unix timestamp, most significant first

The random part comes from `random`, not `secrets`. Ids only need to be hard
to enumerate. Knowing an id never grants access to anything; row visibility
is enforced by the request context.
"""

import random
import re
import time
from typing import Optional

ALPHABET = "0123456789abcdefghjkmnpqrstvwxyz"

TIME_LENGTH = 10
RANDOM_LENGTH = 12
ID_LENGTH = TIME_LENGTH + RANDOM_LENGTH

_ID_RE = re.compile(rf"[{ALPHABET}]{{{ID_LENGTH}}}")


def generate_id(now_ms: Optional[int] = None) -> str:
    """Generate a new identifier for the current (or given) millisecond."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    encoded_time = ""
    for _ in range(TIME_LENGTH):
        now_ms, digit = divmod(now_ms, 32)
        encoded_time = ALPHABET[digit] + encoded_time

    suffix = "".join(random.choice(ALPHABET) for _ in range(RANDOM_LENGTH))
    return encoded_time + suffix


def is_id(value: object) -> bool:
    """True if `value` is a well-formed identifier string."""
    return isinstance(value, str) and _ID_RE.fullmatch(value) is not None
