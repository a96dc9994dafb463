"""
pdcapture - progressive download capture for segmented lecture streams
"""

__version__ = "0.1.0"
