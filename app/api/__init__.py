"""
API module for the calendar sync backend
"""

__all__ = []
