"""
States Plugin - state overview pages.
"""

from .parser import StateParser

__all__ = ["StateParser"]
