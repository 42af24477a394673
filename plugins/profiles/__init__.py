"""
Profiles Plugin - player profile pages.
"""

from .parser import ProfileParser

__all__ = ["ProfileParser"]
