"""Sender identity resolution."""
from identity.resolver import DirectoryUnavailable, IdentityResolver, normalize_address

__all__ = ["DirectoryUnavailable", "IdentityResolver", "normalize_address"]
