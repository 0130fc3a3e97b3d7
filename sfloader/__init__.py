"""
sfloader: lazy soundfont acquisition with tiered caching and a budgeted cache proxy.
"""

__version__ = "1.0.4"
