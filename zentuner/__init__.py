"""
ZenTuner

Blind tuning-reference and bass-root analysis with a parameter-automated
retuning chain, live playback and dithered 16-bit export.
"""

__version__ = "1.0.0"
__author__ = "ZenTuner Team"
