"""
serialization.py
~~~~~~~~~~~~~~~~

Binary model format for feedforward networks.

The layout is fixed to little-endian byte order, 4-byte signed integers
and 8-byte IEEE-754 doubles with no padding::

    learning_rate       float64
    layer_count         int32
    for each layer:
        unit_count      int32
        for each unit:
            weight_count    int32
            weights         weight_count x float64
            bias            float64

Transient unit state (last output and error signal) is not stored.
Decoding produces a ``ModelImage``; building or updating a ``Network``
from it is left to ``ffnet.network``.
"""

import struct
import logging
from typing import Any, List, NamedTuple

import numpy as np

from ffnet.errors import ModelFormatError

# Configure module logger
logger = logging.getLogger(__name__)

_DOUBLE = struct.Struct('<d')
_INT = struct.Struct('<i')
_WEIGHT_DTYPE = np.dtype('<f8')


class UnitRecord(NamedTuple):
    """Weights and bias of one unit as read from a model image."""

    weights: np.ndarray
    bias: float


class ModelImage(NamedTuple):
    """Decoded contents of a binary model."""

    learning_rate: float
    layers: List[List[UnitRecord]]

    @property
    def shape(self) -> List[List[int]]:
        """Weight count of every unit, layer by layer."""
        return [[len(record.weights) for record in layer]
                for layer in self.layers]


def dumps(network: Any) -> bytes:
    """
    Encode a network into the binary model format.

    Args:
        network: Object exposing ``learning_rate`` and ``layers``, where
            each layer exposes ``units`` with ``weights`` and ``bias``

    Returns:
        bytes: The encoded model
    """
    chunks = [
        _DOUBLE.pack(network.learning_rate),
        _INT.pack(len(network.layers))
    ]
    for layer in network.layers:
        chunks.append(_INT.pack(len(layer.units)))
        for unit in layer.units:
            weights = np.asarray(unit.weights, dtype=_WEIGHT_DTYPE)
            chunks.append(_INT.pack(len(weights)))
            chunks.append(weights.tobytes())
            chunks.append(_DOUBLE.pack(unit.bias))
    return b''.join(chunks)


def save(network: Any, path: str) -> None:
    """
    Write a network to ``path``, replacing any existing file.

    Raises:
        OSError: If the file cannot be opened or written
    """
    data = dumps(network)
    with open(path, 'wb') as f:
        f.write(data)
    logger.debug(f"Wrote {len(data)} byte model to {path}")


class _Reader:
    """Sequential reader over an encoded model."""

    def __init__(self, data: bytes):
        self._data = memoryview(data)
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int, what: str) -> memoryview:
        if size > self.remaining:
            raise ModelFormatError(
                f"Truncated model: needed {size} bytes for {what} at "
                f"offset {self._offset}, only {self.remaining} left"
            )
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def read_double(self, what: str) -> float:
        return _DOUBLE.unpack(self._take(_DOUBLE.size, what))[0]

    def read_count(self, what: str) -> int:
        value = _INT.unpack(self._take(_INT.size, what))[0]
        if value < 0:
            raise ModelFormatError(f"Negative {what} ({value}) in model")
        return value

    def read_weights(self, count: int) -> np.ndarray:
        chunk = self._take(count * _WEIGHT_DTYPE.itemsize, 'weights')
        return np.frombuffer(chunk, dtype=_WEIGHT_DTYPE).astype(np.float64)


def loads(data: bytes) -> ModelImage:
    """
    Decode a binary model.

    Args:
        data: Encoded model, as produced by ``dumps``

    Returns:
        ModelImage: Learning rate and per-unit weights and biases

    Raises:
        ModelFormatError: If the data is truncated, holds a negative
            count or carries trailing bytes
    """
    reader = _Reader(data)
    learning_rate = reader.read_double('learning rate')
    layers = []
    for _ in range(reader.read_count('layer count')):
        records = []
        for _ in range(reader.read_count('unit count')):
            weights = reader.read_weights(reader.read_count('weight count'))
            bias = reader.read_double('bias')
            records.append(UnitRecord(weights, bias))
        layers.append(records)

    if reader.remaining:
        raise ModelFormatError(
            f"Unexpected {reader.remaining} trailing bytes after model"
        )
    return ModelImage(learning_rate, layers)


def read(path: str) -> ModelImage:
    """
    Read and decode the model stored at ``path``.

    Raises:
        OSError: If the file cannot be opened or read
        ModelFormatError: If the file is not a valid model
    """
    with open(path, 'rb') as f:
        data = f.read()
    image = loads(data)
    logger.debug(f"Read model from {path} with shape {image.shape}")
    return image
