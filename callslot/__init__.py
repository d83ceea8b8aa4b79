"""
callslot - meeting slot availability and booking engine.
"""

__version__ = "0.1.0"
