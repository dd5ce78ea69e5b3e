"""
pigi: serve GitHub Release assets through the PyPI Simple Repository API.
"""

__version__ = "0.1.0"
