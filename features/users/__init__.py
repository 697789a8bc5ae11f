"""
Users feature — read-only boundary to the session collaborator.

Public API:
    from features.users import UserIdentity, StoreSessionResolver
"""

from features.users.models import UserIdentity
from features.users.sessions import StoreSessionResolver

__all__ = ["StoreSessionResolver", "UserIdentity"]
