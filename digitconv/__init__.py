"""
digitconv package
~~~~~~~~~~~~~~~~~

Forward pass of a fixed 28x28 / 8-filter convolutional digit classifier.
Contains the network stages, output reporting helpers, SQLite weight
persistence, and an HTTP API server.
"""

__version__ = "1.0.0"
