"""
Identity handed to the core by the session collaborator.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class UserIdentity:
    id: int
    email: str
