"""
ffnet package
~~~~~~~~~~~~~

Minimal fully-connected feedforward neural network with online
backpropagation training. Contains the network implementation, the
binary model format, a SQLite model registry and an API server.
"""

from ffnet.errors import (
    NetworkError,
    InvalidTopology,
    InputSizeMismatch,
    TargetSizeMismatch,
    TopologyMismatch,
    ModelFormatError
)
from ffnet.network import Unit, Layer, Network, sigmoid

__version__ = "1.0.0"

__all__ = [
    'Unit',
    'Layer',
    'Network',
    'sigmoid',
    'NetworkError',
    'InvalidTopology',
    'InputSizeMismatch',
    'TargetSizeMismatch',
    'TopologyMismatch',
    'ModelFormatError',
]
