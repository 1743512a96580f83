"""
report.py
~~~~~~~~~

Helpers for consumers of the network output: class labels, the plain-text
probability listing and the top-1 prediction.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from digitconv.network import ConvNetwork, as_input_image

CLASS_LABELS: List[str] = [str(digit) for digit in range(10)]


def format_probabilities(probabilities: Sequence[float]) -> List[str]:
    """
    Render one ``[index] probability`` line per class.

    Example:
        >>> format_probabilities([0.25, 0.75])
        ['[0] 0.250000', '[1] 0.750000']
    """
    return [f"[{i}] {float(p):f}" for i, p in enumerate(probabilities)]


def top_prediction(
    probabilities: Sequence[float],
    labels: Optional[Sequence[str]] = None
) -> Dict[str, Any]:
    """
    Pick the most probable class.

    Args:
        probabilities: Network output, one value per class
        labels: Optional class names; defaults to the digit labels

    Returns:
        dict: {"index": int, "label": str, "confidence": float}
    """
    probs = np.asarray(probabilities)
    labels = CLASS_LABELS if labels is None else labels

    index = int(np.argmax(probs))
    label = labels[index] if 0 <= index < len(labels) else str(index)
    return {'index': index, 'label': label, 'confidence': float(probs[index])}


def predict_digit(network: ConvNetwork, image: Any) -> Dict[str, Any]:
    """Run one forward pass on raw image data and return the top prediction."""
    probabilities = network.feedforward(
        as_input_image(image, dtype=network.dtype)
    )
    return top_prediction(probabilities)
