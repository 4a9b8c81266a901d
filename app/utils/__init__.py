"""
Utility modules for the calendar sync backend.
"""
from app.utils.circuit_breaker import ConnectionCircuitBreaker

__all__ = [
    "ConnectionCircuitBreaker",
]
