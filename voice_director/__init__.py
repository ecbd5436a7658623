"""Tag segmentation and voice direction for tagged audiobook prose."""

__version__ = "0.1.0"
