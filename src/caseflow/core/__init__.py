"""
Caseflow Core Package

Configuration, observability and the case lifecycle engine.
"""

from . import cases
from . import observability

__all__ = ["cases", "observability"]
