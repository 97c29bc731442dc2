"""
network.py
~~~~~~~~~~

A fully-connected feedforward neural network with sigmoid units, trained
one example at a time with backpropagation.

The network is a pipeline of layers; each layer is an ordered list of
units and each unit owns one weight per output of the previous layer.
The input layer is implicit: inputs are fed straight into the first
layer and are never stored as units.
"""

import math
import logging
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from ffnet import serialization
from ffnet.errors import (
    InvalidTopology,
    InputSizeMismatch,
    TargetSizeMismatch,
    TopologyMismatch,
    ModelFormatError
)

# Configure module logger
logger = logging.getLogger(__name__)


def sigmoid(z: float) -> float:
    """The logistic function ``1 / (1 + e^-z)``."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    # Same value, without overflowing exp() for large negative z
    e = math.exp(z)
    return e / (1.0 + e)


def sigmoid_derivative(activation: float) -> float:
    """Derivative of the sigmoid, expressed through its output."""
    return activation * (1.0 - activation)


class Unit:
    """
    One sigmoid unit.

    ``weights`` has a fixed length set at construction; it can be
    overwritten in place but never resized. ``output`` and ``error`` hold
    the values from the most recent forward/backward pass.
    """

    __slots__ = ('_weights', 'bias', 'output', 'error')

    def __init__(self, weights: Iterable[float], bias: float = 0.0):
        weights = np.array(weights, dtype=np.float64)
        if weights.ndim != 1:
            raise InvalidTopology(
                f"Unit weights must be a flat vector, got shape {weights.shape}"
            )
        self._weights = weights
        self.bias = float(bias)
        self.output = 0.0
        self.error = 0.0

    @classmethod
    def random(cls, input_size: int, rng: np.random.Generator) -> 'Unit':
        """Unit with weights and bias drawn uniformly from [0, 1)."""
        weights = rng.random(input_size)
        return cls(weights, rng.random())

    @property
    def weights(self) -> np.ndarray:
        return self._weights

    @weights.setter
    def weights(self, values: Iterable[float]) -> None:
        values = np.asarray(values, dtype=np.float64)
        if values.shape != self._weights.shape:
            raise InvalidTopology(
                f"Cannot replace {len(self._weights)} weights with "
                f"shape {values.shape}"
            )
        self._weights[:] = values

    @property
    def input_size(self) -> int:
        return len(self._weights)

    def activate(self, inputs: np.ndarray) -> float:
        """Compute and store this unit's output for ``inputs``."""
        z = self.bias + float(np.dot(self._weights, inputs))
        self.output = sigmoid(z)
        return self.output

    def adjust(self, step: float, inputs: np.ndarray) -> None:
        """Move bias by ``step`` and each weight by ``step * input``."""
        self.bias += step
        self._weights += step * inputs

    def __repr__(self) -> str:
        return f"Unit(weights={self._weights.tolist()}, bias={self.bias})"


class Layer:
    """An ordered, non-empty group of units reading the same inputs."""

    def __init__(self, units: Iterable[Unit]):
        units = tuple(units)
        if not units:
            raise InvalidTopology("A layer needs at least one unit")
        input_size = units[0].input_size
        if input_size < 1:
            raise InvalidTopology("Units need at least one weight")
        for index, unit in enumerate(units):
            if unit.input_size != input_size:
                raise InvalidTopology(
                    f"Unit {index} has {unit.input_size} weights, "
                    f"expected {input_size}"
                )
        self.units = units

    @classmethod
    def random(
        cls,
        input_size: int,
        size: int,
        rng: np.random.Generator
    ) -> 'Layer':
        return cls(Unit.random(input_size, rng) for _ in range(size))

    @property
    def size(self) -> int:
        return len(self.units)

    @property
    def input_size(self) -> int:
        return self.units[0].input_size

    def feedforward(self, inputs: np.ndarray) -> np.ndarray:
        """Activate every unit on ``inputs`` and return their outputs."""
        return np.array([unit.activate(inputs) for unit in self.units])

    def outputs(self) -> np.ndarray:
        """Outputs stored by the last forward pass."""
        return np.array([unit.output for unit in self.units])

    def __len__(self) -> int:
        return len(self.units)

    def __iter__(self) -> Iterator[Unit]:
        return iter(self.units)

    def __getitem__(self, index: int) -> Unit:
        return self.units[index]


def _validate_sizes(sizes: Sequence[int]) -> List[int]:
    sizes = list(sizes)
    if len(sizes) < 2:
        raise InvalidTopology(
            f"Topology needs at least 2 layer sizes, got {sizes}"
        )
    for size in sizes:
        if isinstance(size, bool) or not isinstance(size, (int, np.integer)):
            raise InvalidTopology(f"Layer sizes must be integers, got {sizes}")
        if size <= 0:
            raise InvalidTopology(f"Layer sizes must be positive, got {sizes}")
    return [int(size) for size in sizes]


class Network:
    """
    Feedforward network of sigmoid units.

    Example:
        >>> net = Network([2, 3, 2], 0.5, rng=np.random.default_rng(1))
        >>> net.train([1.0, 0.0], [1.0, 0.0])
        >>> net.predict([1.0, 0.0]).shape
        (2,)
    """

    def __init__(
        self,
        sizes: Sequence[int],
        learning_rate: float,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Build a network with random weights.

        Args:
            sizes: Units per layer, input layer first. ``[2, 3, 1]`` has
                two inputs, one hidden layer of three units and one output.
            learning_rate: Step size applied by ``train``
            rng: Source of the initial weights and biases, drawn
                uniformly from [0, 1). A fresh unseeded generator is used
                when omitted.

        Raises:
            InvalidTopology: If fewer than two sizes are given or any size
                is not a positive integer
        """
        sizes = _validate_sizes(sizes)
        if rng is None:
            rng = np.random.default_rng()

        self.learning_rate = float(learning_rate)
        self.layers = tuple(
            Layer.random(input_size, size, rng)
            for input_size, size in zip(sizes[:-1], sizes[1:])
        )
        logger.debug(
            f"Created network {sizes} with learning rate {self.learning_rate}"
        )

    @classmethod
    def from_layers(
        cls,
        layers: Iterable[Layer],
        learning_rate: float
    ) -> 'Network':
        """
        Assemble a network from prebuilt layers.

        Raises:
            InvalidTopology: If there are no layers or a layer's input
                size differs from the previous layer's unit count
        """
        layers = tuple(layers)
        if not layers:
            raise InvalidTopology("A network needs at least one layer")
        for index in range(1, len(layers)):
            if layers[index].input_size != layers[index - 1].size:
                raise InvalidTopology(
                    f"Layer {index} expects {layers[index].input_size} "
                    f"inputs but layer {index - 1} has "
                    f"{layers[index - 1].size} units"
                )

        net = cls.__new__(cls)
        net.learning_rate = float(learning_rate)
        net.layers = layers
        return net

    @classmethod
    def _from_image(cls, image: serialization.ModelImage) -> 'Network':
        try:
            layers = [
                Layer(Unit(record.weights, record.bias) for record in records)
                for records in image.layers
            ]
            return cls.from_layers(layers, image.learning_rate)
        except InvalidTopology as e:
            raise ModelFormatError(f"Model describes no valid network: {e}") from e

    @classmethod
    def from_file(cls, path: str) -> 'Network':
        """
        Build a network from a saved model, taking its topology from the file.

        Raises:
            OSError: If the file cannot be read
            ModelFormatError: If the file is not a valid model
        """
        net = cls._from_image(serialization.read(path))
        logger.info(f"Loaded network {net.sizes} from {path}")
        return net

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Network':
        """Build a network from an encoded model."""
        return cls._from_image(serialization.loads(data))

    @property
    def sizes(self) -> List[int]:
        """Topology: input size followed by each layer's unit count."""
        return [self.layers[0].input_size] + [layer.size for layer in self.layers]

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int:
        return self.layers[-1].size

    def _as_input(self, inputs: Iterable[float]) -> np.ndarray:
        inputs = np.asarray(inputs, dtype=np.float64)
        if inputs.ndim != 1:
            raise InputSizeMismatch(
                f"Inputs must be a flat sequence, got shape {inputs.shape}"
            )
        if len(inputs) != self.input_size:
            raise InputSizeMismatch(
                f"Expected {self.input_size} inputs, got {len(inputs)}"
            )
        return inputs

    def _as_targets(self, targets: Iterable[float]) -> np.ndarray:
        targets = np.asarray(targets, dtype=np.float64)
        if targets.ndim != 1:
            raise TargetSizeMismatch(
                f"Targets must be a flat sequence, got shape {targets.shape}"
            )
        if len(targets) != self.output_size:
            raise TargetSizeMismatch(
                f"Expected {self.output_size} targets, got {len(targets)}"
            )
        return targets

    def predict(self, inputs: Iterable[float]) -> np.ndarray:
        """
        Run a forward pass.

        Args:
            inputs: One value per network input

        Returns:
            np.ndarray: Outputs of the last layer

        Raises:
            InputSizeMismatch: If ``inputs`` has the wrong length
        """
        activation = self._as_input(inputs)
        for layer in self.layers:
            activation = layer.feedforward(activation)
        return activation

    def train(self, inputs: Iterable[float], targets: Iterable[float]) -> None:
        """
        Take one backpropagation step towards ``targets``.

        Every unit's error is computed from the pre-update weights before
        any weight or bias changes. Each layer is then updated against the
        inputs it saw during the forward pass.

        Raises:
            InputSizeMismatch: If ``inputs`` has the wrong length
            TargetSizeMismatch: If ``targets`` does not have one value per
                output unit. The network is left unchanged.
        """
        activation = self._as_input(inputs)
        targets = self._as_targets(targets)

        layer_inputs = []
        for layer in self.layers:
            layer_inputs.append(activation)
            activation = layer.feedforward(activation)

        for unit, target in zip(self.layers[-1].units, targets):
            unit.error = sigmoid_derivative(unit.output) * (float(target) - unit.output)

        for layer, next_layer in zip(reversed(self.layers[:-1]),
                                     reversed(self.layers[1:])):
            for j, unit in enumerate(layer.units):
                downstream = sum(
                    other.error * float(other.weights[j])
                    for other in next_layer.units
                )
                unit.error = sigmoid_derivative(unit.output) * downstream

        for layer, layer_input in zip(self.layers, layer_inputs):
            for unit in layer.units:
                unit.adjust(self.learning_rate * unit.error, layer_input)

    def evaluate(
        self,
        samples: Iterable[Tuple[Iterable[float], Iterable[float]]]
    ) -> float:
        """
        Mean squared error over ``(inputs, targets)`` pairs.

        Only runs forward passes; weights are not changed.
        """
        errors = []
        for inputs, targets in samples:
            targets = self._as_targets(targets)
            errors.append(np.mean((self.predict(inputs) - targets) ** 2))
        if not errors:
            raise ValueError("Cannot evaluate on an empty sample set")
        return float(np.mean(errors))

    def save(self, path: str) -> None:
        """
        Write weights, biases and learning rate to ``path``.

        Raises:
            OSError: If the file cannot be written
        """
        serialization.save(self, path)
        logger.info(f"Saved network {self.sizes} to {path}")

    def to_bytes(self) -> bytes:
        return serialization.dumps(self)

    def load(self, path: str) -> None:
        """
        Replace weights, biases and learning rate with those saved at ``path``.

        The whole file is decoded and checked against this network's
        topology before anything is modified.

        Raises:
            OSError: If the file cannot be read
            ModelFormatError: If the file is not a valid model
            TopologyMismatch: If the saved layer, unit or weight counts
                differ from this network's. The network is left unchanged.
        """
        self._apply_image(serialization.read(path))
        logger.info(f"Loaded weights for network {self.sizes} from {path}")

    def load_bytes(self, data: bytes) -> None:
        """Like ``load``, from an encoded model."""
        self._apply_image(serialization.loads(data))

    def _check_image(self, image: serialization.ModelImage) -> None:
        if len(image.layers) != len(self.layers):
            raise TopologyMismatch(
                f"Model has {len(image.layers)} layers, "
                f"network has {len(self.layers)}"
            )
        for index, (records, layer) in enumerate(zip(image.layers, self.layers)):
            if len(records) != layer.size:
                raise TopologyMismatch(
                    f"Model layer {index} has {len(records)} units, "
                    f"network layer has {layer.size}"
                )
            for record, unit in zip(records, layer.units):
                if len(record.weights) != unit.input_size:
                    raise TopologyMismatch(
                        f"Model layer {index} units have "
                        f"{len(record.weights)} weights, network layer "
                        f"units have {unit.input_size}"
                    )

    def _apply_image(self, image: serialization.ModelImage) -> None:
        self._check_image(image)
        for records, layer in zip(image.layers, self.layers):
            for record, unit in zip(records, layer.units):
                unit.weights = record.weights
                unit.bias = record.bias
        self.learning_rate = image.learning_rate

    def __repr__(self) -> str:
        return (
            f"Network(sizes={self.sizes}, "
            f"learning_rate={self.learning_rate})"
        )
