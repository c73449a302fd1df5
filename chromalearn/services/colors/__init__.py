"""
ChromaLearn Colors Module

Color representation, dominant-color extraction, reference palettes and
weighted-distance matching against those palettes.
"""

__version__ = "1.0.0"
