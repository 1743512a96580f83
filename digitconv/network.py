"""
network.py
~~~~~~~~~~

Forward pass of a small fixed-topology convolutional digit classifier.

The network maps a single-channel 28x28 image to a probability distribution
over 10 classes through four stages, always run in this order:

1. ``conv2d_relu``  - 8 valid 5x5 convolutions with bias and ReLU (8x24x24)
2. ``max_pool``     - non-overlapping 2x2 max pooling (8x12x12)
3. ``flatten``      - row-major reindexing into a 1152x1 column
4. ``dense_softmax`` - affine transform to 10 logits, then softmax

The stage functions are pure and accept an optional ``out`` buffer.
``ConvNetwork`` owns the weights and one preallocated buffer per
intermediate tensor, and runs the stages once per call to ``feedforward``.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

# Configure module logger
logger = logging.getLogger(__name__)

NUM_FILTERS = 8
FILTER_SIZE = 5
INPUT_SIZE = 28
CONV_SIZE = INPUT_SIZE - FILTER_SIZE + 1
POOL_SIZE = 2
POOLED_SIZE = CONV_SIZE // POOL_SIZE
FLAT_SIZE = NUM_FILTERS * POOLED_SIZE * POOLED_SIZE
NUM_CLASSES = 10

INPUT_SHAPE = (1, INPUT_SIZE, INPUT_SIZE)
FILTERS_SHAPE = (NUM_FILTERS, FILTER_SIZE, FILTER_SIZE)
FEATURE_MAP_SHAPE = (NUM_FILTERS, CONV_SIZE, CONV_SIZE)
POOLED_MAP_SHAPE = (NUM_FILTERS, POOLED_SIZE, POOLED_SIZE)
FLAT_SHAPE = (FLAT_SIZE, 1)
DENSE_WEIGHTS_SHAPE = (NUM_CLASSES, FLAT_SIZE)

ARCHITECTURE: Dict[str, int] = {
    'input_size': INPUT_SIZE,
    'num_filters': NUM_FILTERS,
    'filter_size': FILTER_SIZE,
    'pool_size': POOL_SIZE,
    'flat_size': FLAT_SIZE,
    'num_classes': NUM_CLASSES,
}


class ConfigurationError(ValueError):
    """Raised when supplied weights don't match the fixed architecture."""


# ============================================================================
# STAGES
# ============================================================================

def conv2d_relu(
    image: np.ndarray,
    filters: np.ndarray,
    filter_bias: np.ndarray,
    out: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Valid, stride-1 convolution of a single-channel image, plus bias and ReLU.

    ``out[z, r, c] = sum(image[0, r:r+5, c:c+5] * filters[z]) + filter_bias[z]``,
    then every entry that is not ``>= 0`` (negatives and NaN) is set to 0.

    Args:
        image: Input image of shape (1, 28, 28)
        filters: Filter bank of shape (8, 5, 5)
        filter_bias: One bias per filter, shape (8,)
        out: Optional (8, 24, 24) buffer to write into

    Returns:
        The feature map, shape (8, 24, 24)
    """
    if out is None:
        out = np.empty(FEATURE_MAP_SHAPE, dtype=np.result_type(image, filters))

    # windows[r, c] is the 5x5 patch whose top-left corner is image[0, r, c]
    windows = sliding_window_view(image[0], (FILTER_SIZE, FILTER_SIZE))
    np.einsum('rcij,zij->zrc', windows, filters, out=out)
    out += filter_bias[:, np.newaxis, np.newaxis]

    np.copyto(out, 0.0, where=~(out >= 0))
    return out


def max_pool(
    feature_map: np.ndarray,
    out: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Non-overlapping 2x2 max pooling with stride 2, per filter.

    The running maximum starts at 0, so a window holding only negative
    values pools to 0 and a NaN never replaces the running maximum.

    Args:
        feature_map: Rectified feature map of shape (8, 24, 24)
        out: Optional (8, 12, 12) buffer to write into

    Returns:
        The pooled map, shape (8, 12, 12)
    """
    if out is None:
        out = np.empty(POOLED_MAP_SHAPE, dtype=feature_map.dtype)

    # axes: filter, out row, row in window, out col, col in window
    blocks = feature_map.reshape(
        NUM_FILTERS, POOLED_SIZE, POOL_SIZE, POOLED_SIZE, POOL_SIZE
    )
    np.fmax.reduce(blocks, axis=(2, 4), initial=0.0, out=out)
    return out


def flatten(
    pooled_map: np.ndarray,
    out: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Lay the pooled maps out as one column vector.

    ``out[144*z + 12*row + col, 0] = pooled_map[z, row, col]``. The dense
    weights are defined against exactly this ordering.

    Args:
        pooled_map: Pooled map of shape (8, 12, 12)
        out: Optional (1152, 1) buffer to write into

    Returns:
        The flat vector, shape (1152, 1)
    """
    if out is None:
        out = np.empty(FLAT_SHAPE, dtype=pooled_map.dtype)
    np.copyto(out, pooled_map.reshape(FLAT_SHAPE))
    return out


def dense_softmax(
    flat_vector: np.ndarray,
    dense_weights: np.ndarray,
    dense_bias: np.ndarray,
    logits: Optional[np.ndarray] = None,
    out: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Affine transform followed by exponential normalization.

    ``logits = dense_weights @ flat_vector + dense_bias`` and
    ``out = exp(logits) / sum(exp(logits))``. The logits are exponentiated
    as-is, with no max-subtraction: large logits overflow to inf and the
    resulting inf/NaN values are returned unchanged.

    Args:
        flat_vector: Column vector of shape (1152, 1)
        dense_weights: Weight matrix of shape (10, 1152)
        dense_bias: One bias per class, shape (10,)
        logits: Optional (10, 1) buffer for the pre-normalization scores
        out: Optional (10,) buffer for the probabilities

    Returns:
        tuple: (logits, probabilities)
    """
    dtype = np.result_type(flat_vector, dense_weights)
    if logits is None:
        logits = np.empty((NUM_CLASSES, 1), dtype=dtype)
    if out is None:
        out = np.empty(NUM_CLASSES, dtype=dtype)

    np.matmul(dense_weights, flat_vector, out=logits)
    logits += dense_bias[:, np.newaxis]

    np.exp(logits[:, 0], out=out)
    out /= out.sum()
    return logits, out


# ============================================================================
# INPUT BOUNDARY
# ============================================================================

def as_input_image(image: Any, dtype: Any = np.float64) -> np.ndarray:
    """
    Convert image data into the (1, 28, 28) layout the network expects.

    Accepts a flat 784-vector, a (784, 1) column (the MNIST loader layout),
    a 28x28 matrix or an already shaped 1x28x28 tensor. Pixel values are
    passed through unchanged.

    Args:
        image: Array-like holding 784 pixel values
        dtype: Floating point type of the returned array

    Returns:
        np.ndarray: Image of shape (1, 28, 28)

    Raises:
        ValueError: If the data doesn't hold exactly 28x28 values
    """
    array = np.asarray(image, dtype=dtype)
    if array.shape not in ((784,), (784, 1), (28, 28), INPUT_SHAPE):
        raise ValueError(
            f"Expected a 28x28 image (784 values), got shape {array.shape}"
        )
    return array.reshape(INPUT_SHAPE)


def _validated(
    name: str,
    value: Any,
    shape: Tuple[int, ...],
    dtype: np.dtype
) -> np.ndarray:
    """Return ``value`` as an owned array of ``shape`` or raise ConfigurationError."""
    try:
        array = np.array(value, dtype=dtype)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} is not numeric: {e}") from e

    # Bias vectors may arrive as columns
    if len(shape) == 1 and array.shape == shape + (1,):
        array = array.reshape(shape)

    if array.shape != shape:
        raise ConfigurationError(
            f"{name} must have shape {shape}, got {array.shape}"
        )
    return array


# ============================================================================
# NETWORK
# ============================================================================

class ConvNetwork:
    """
    Weights plus preallocated buffers for one forward pass at a time.

    Each intermediate tensor (feature map, pooled map, flat vector, logits,
    output) is allocated once and overwritten in place by its stage on every
    call to ``feedforward``. A single instance is not safe to share between
    concurrent forward passes; use one instance per thread.

    Tensors default to float64. Softmax then overflows once a logit passes
    about 709; with ``dtype=np.float32`` it overflows past about 88, the
    same point as a single-precision implementation.
    """

    def __init__(
        self,
        filters: Any,
        filter_bias: Any,
        dense_weights: Any,
        dense_bias: Any,
        dtype: Any = np.float64
    ):
        """
        Validate the weights and allocate the intermediate buffers.

        Args:
            filters: Filter bank, shape (8, 5, 5)
            filter_bias: Filter biases, shape (8,) or (8, 1)
            dense_weights: Dense weight matrix, shape (10, 1152)
            dense_bias: Dense biases, shape (10,) or (10, 1)
            dtype: Floating point type used for every tensor

        Raises:
            ConfigurationError: If any tensor has the wrong shape
        """
        self.dtype = np.dtype(dtype)

        self.filters = _validated('filters', filters, FILTERS_SHAPE, self.dtype)
        self.filter_bias = _validated(
            'filter_bias', filter_bias, (NUM_FILTERS,), self.dtype
        )
        self.dense_weights = _validated(
            'dense_weights', dense_weights, DENSE_WEIGHTS_SHAPE, self.dtype
        )
        self.dense_bias = _validated(
            'dense_bias', dense_bias, (NUM_CLASSES,), self.dtype
        )

        self.feature_map = np.zeros(FEATURE_MAP_SHAPE, dtype=self.dtype)
        self.pooled_map = np.zeros(POOLED_MAP_SHAPE, dtype=self.dtype)
        self.flat_vector = np.zeros(FLAT_SHAPE, dtype=self.dtype)
        self.logits = np.zeros((NUM_CLASSES, 1), dtype=self.dtype)
        self.output = np.zeros(NUM_CLASSES, dtype=self.dtype)

        logger.info(f"Created network {self.architecture} ({self.dtype})")

    @classmethod
    def initialize(
        cls,
        seed: Optional[int] = None,
        dtype: Any = np.float64
    ) -> 'ConvNetwork':
        """
        Create a network with Gaussian random weights.

        Weights are scaled by 1/sqrt(fan_in) so the logits of a [0, 1]
        image stay in a range where softmax does not overflow.

        Args:
            seed: Seed for the random generator
            dtype: Floating point type used for every tensor

        Returns:
            ConvNetwork: A network with random weights
        """
        rng = np.random.default_rng(seed)
        return cls(
            filters=rng.standard_normal(FILTERS_SHAPE) / FILTER_SIZE,
            filter_bias=rng.standard_normal(NUM_FILTERS),
            dense_weights=(
                rng.standard_normal(DENSE_WEIGHTS_SHAPE) / np.sqrt(FLAT_SIZE)
            ),
            dense_bias=rng.standard_normal(NUM_CLASSES),
            dtype=dtype
        )

    @property
    def architecture(self) -> Dict[str, int]:
        return dict(ARCHITECTURE)

    @property
    def weights(self) -> List[np.ndarray]:
        """Filter bank and dense weight matrix, in pipeline order."""
        return [self.filters, self.dense_weights]

    @property
    def biases(self) -> List[np.ndarray]:
        """Filter biases and dense biases, in pipeline order."""
        return [self.filter_bias, self.dense_bias]

    def feedforward(self, image: Any) -> np.ndarray:
        """
        Run the four stages once and return the class probabilities.

        Args:
            image: Input image of shape (1, 28, 28)

        Returns:
            np.ndarray: A copy of the 10 output probabilities

        Raises:
            ValueError: If the image does not have shape (1, 28, 28)
        """
        image = np.asarray(image, dtype=self.dtype)
        if image.shape != INPUT_SHAPE:
            raise ValueError(
                f"Input image must have shape {INPUT_SHAPE}, got {image.shape}"
            )

        conv2d_relu(image, self.filters, self.filter_bias, out=self.feature_map)
        max_pool(self.feature_map, out=self.pooled_map)
        flatten(self.pooled_map, out=self.flat_vector)
        dense_softmax(
            self.flat_vector,
            self.dense_weights,
            self.dense_bias,
            logits=self.logits,
            out=self.output
        )

        logger.debug(f"Forward pass output: {self.output}")
        return self.output.copy()
