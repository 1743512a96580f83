"""
test_report.py
~~~~~~~~~~~~~~

Unit tests for the output reporting helpers.
"""

import numpy as np
import pytest

from digitconv.network import ConvNetwork
from digitconv.report import (
    CLASS_LABELS,
    format_probabilities,
    predict_digit,
    top_prediction,
)


@pytest.mark.unit
class TestReport:

    def test_format_probabilities(self):
        lines = format_probabilities(np.array([0.5, 0.25, 0.125, 0.125]))
        assert lines == [
            '[0] 0.500000',
            '[1] 0.250000',
            '[2] 0.125000',
            '[3] 0.125000',
        ]

    def test_format_probabilities_keeps_nan(self):
        assert format_probabilities([float('nan')]) == ['[0] nan']

    def test_class_labels(self):
        assert CLASS_LABELS == ['0', '1', '2', '3', '4', '5', '6', '7', '8', '9']

    def test_top_prediction(self):
        probs = np.full(10, 0.05)
        probs[4] = 0.55

        prediction = top_prediction(probs)

        assert prediction == {'index': 4, 'label': '4', 'confidence': 0.55}

    def test_top_prediction_custom_labels(self):
        prediction = top_prediction([0.1, 0.9], labels=['cat', 'dog'])
        assert prediction['label'] == 'dog'

    def test_top_prediction_reports_first_nan(self):
        prediction = top_prediction([0.0, float('nan'), 0.0])
        assert prediction['index'] == 1
        assert np.isnan(prediction['confidence'])

    def test_predict_digit_accepts_flat_image(self):
        filters = np.zeros((8, 5, 5))
        dense_weights = np.zeros((10, 1152))
        dense_bias = np.zeros(10)
        dense_bias[8] = 3.0
        net = ConvNetwork(filters, np.zeros(8), dense_weights, dense_bias)

        prediction = predict_digit(net, [0.0] * 784)

        assert prediction['index'] == 8
        assert prediction['label'] == '8'
