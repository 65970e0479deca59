"""
Vector helpers for embedding storage and similarity.

Embeddings are kept L2-normalized so that a plain dot product equals
cosine similarity. On disk they are packed as little-endian float32.
"""

import math
import struct
from typing import List, Sequence


def normalize(vector: List[float]) -> List[float]:
    """
    L2 normalize a vector.

    Empty and zero-norm vectors are returned unchanged (the same object).
    """
    if not vector:
        return vector

    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return vector
    return [x / magnitude for x in vector]


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of two vectors; 0.0 when the lengths differ."""
    if len(a) != len(b):
        return 0.0
    return math.fsum(x * y for x, y in zip(a, b))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors that are not necessarily normalized.

    Returns a value in [-1, 1], or 0.0 for empty, mismatched or zero vectors.
    """
    if not a or len(a) != len(b):
        return 0.0

    dot = math.fsum(x * y for x, y in zip(a, b))
    mag_a = math.sqrt(math.fsum(x * x for x in a))
    mag_b = math.sqrt(math.fsum(y * y for y in b))

    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    """Pack a vector as little-endian float32, 4 bytes per component."""
    return struct.pack(f"<{len(vector)}f", *vector)


def bytes_to_vector(data: bytes) -> List[float]:
    """
    Unpack little-endian float32 bytes into a list of floats.

    Returns an empty list when the length is not a multiple of 4.
    """
    if not data or len(data) % 4 != 0:
        return []
    return list(struct.unpack(f"<{len(data) // 4}f", data))
