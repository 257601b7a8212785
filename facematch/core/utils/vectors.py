"""
Feature vector encoding helpers.

Vectors are persisted as raw little-endian float32 bytes.
"""
from typing import Optional, Sequence, Union

import numpy as np

_FLOAT_SIZE = np.dtype("<f4").itemsize


def encode_vector(vector: Union[np.ndarray, Sequence[float]]) -> bytes:
    """Serialize a vector as float32 bytes."""
    return np.asarray(vector, dtype="<f4").ravel().tobytes()


def decode_vector(data: Optional[bytes]) -> Optional[np.ndarray]:
    """Decode float32 bytes, or return None when the payload is not a float vector."""
    if not data or len(data) % _FLOAT_SIZE != 0:
        return None
    return np.frombuffer(data, dtype="<f4").astype(np.float32)


def l2_normalize(vector: np.ndarray) -> Optional[np.ndarray]:
    """Scale a vector to unit length; None for a zero vector."""
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not np.isfinite(norm):
        return None
    return vector / norm
