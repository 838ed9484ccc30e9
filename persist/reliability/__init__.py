"""
Reliability module: Load retry backoff.
"""

from persist.reliability.backoff import LoadBackoff, Sleep

__all__ = [
    "LoadBackoff",
    "Sleep",
]
