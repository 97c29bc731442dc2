"""
errors.py
~~~~~~~~~

Exceptions raised by the network engine and the binary model format.
"""


class NetworkError(ValueError):
    """Base class for all network errors."""


class InvalidTopology(NetworkError):
    """Raised when a network is built from a degenerate topology."""


class InputSizeMismatch(NetworkError):
    """Raised when an input vector does not match the first layer."""


class TargetSizeMismatch(NetworkError):
    """Raised when a target vector does not match the output layer."""


class TopologyMismatch(NetworkError):
    """Raised when a saved model does not fit the receiving network."""


class ModelFormatError(NetworkError, IOError):
    """Raised when a binary model image is truncated or malformed."""
