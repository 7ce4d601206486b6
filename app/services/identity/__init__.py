"""
Remote Identity Resolver

Resolves a local client to its VPN panel subscriber.
"""

from app.services.identity.service import (
    resolve,
    derive_username,
    ResolvedIdentity,
)

__all__ = [
    "resolve",
    "derive_username",
    "ResolvedIdentity",
]
