"""Batched SHA-256 commitment over a fee series.

Each value is packed as a 256-bit felt (see :mod:`reserve_engine.fixed_point`),
its 32 little-endian bytes are read as eight little-endian u32 words and
each word is written back big-endian.  Every ``batch_size`` felts are
hashed, the batch digests are concatenated and hashed again, and the final
digest is exposed as eight big-endian u32 words.  The layout matches the
on-chain hash store, so a commitment computed here can be compared with
one recorded there.

Usage::

    words = commit_values(series.values, batch_size=180)
"""

from __future__ import annotations

import hashlib
import struct
from typing import Iterable, List, Sequence, Tuple

from reserve_engine import fixed_point
from reserve_engine.errors import EmptySeries

FELT_BYTES = 32


def felt_words(felt: int) -> bytes:
    """Serialized form of one felt as fed to SHA-256."""
    words = struct.unpack("<8I", felt.to_bytes(FELT_BYTES, "little"))
    return struct.pack(">8I", *words)


def hash_batch(felts: Iterable[int]) -> bytes:
    digest = hashlib.sha256()
    for felt in felts:
        digest.update(felt_words(felt))
    return digest.digest()


def hash_of_hashes(hashes: Iterable[bytes]) -> bytes:
    return hashlib.sha256(b"".join(hashes)).digest()


def digest_words(digest: bytes) -> Tuple[int, ...]:
    return struct.unpack(">8I", digest)


def commit_felts(felts: Sequence[int], batch_size: int = 180) -> Tuple[int, ...]:
    """Two-level commitment over packed felts; a short final batch is allowed."""
    if not felts:
        raise EmptySeries("cannot commit an empty series")
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    batches: List[bytes] = [
        hash_batch(felts[i:i + batch_size]) for i in range(0, len(felts), batch_size)
    ]
    return digest_words(hash_of_hashes(batches))


def commit_values(values: Iterable[float], batch_size: int = 180) -> Tuple[int, ...]:
    return commit_felts([fixed_point.encode(float(v)) for v in values], batch_size)
