"""Identity resolution between on-chain and runtime agent ids."""

from .resolver import IdentityResolver

__all__ = ["IdentityResolver"]
