"""
Security utilities for authentication and authorization.
"""

from .tokens import TokenPayload, TokenService

__all__ = [
    "TokenService",
    "TokenPayload",
]
