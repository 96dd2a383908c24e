"""
Owner sessions.

Identity is supplied from outside: an IdentityProvider yields an opaque owner
identifier, and every service call receives an explicit OwnerSession. A
session without an owner can neither read nor write a ledger.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .exceptions import OwnershipError


@dataclass(frozen=True)
class OwnerSession:
    """The portfolio owner a request acts for"""
    owner_id: Optional[str]
    display_name: Optional[str] = None
    
    @property
    def is_authenticated(self) -> bool:
        return bool(self.owner_id)
    
    @property
    def author(self) -> str:
        """Name recorded on notes and communications"""
        return self.display_name or self.owner_id or "System"
    
    def require_owner(self) -> str:
        if not self.owner_id:
            raise OwnershipError("No portfolio owner in session")
        return self.owner_id


class IdentityProvider(ABC):
    """Source of the current owner identifier"""
    
    @abstractmethod
    def current_owner(self) -> Optional[str]:
        """Opaque owner id, or None when nobody is signed in"""
        pass
    
    def session(self, display_name: Optional[str] = None) -> OwnerSession:
        return OwnerSession(owner_id=self.current_owner(), display_name=display_name)


class StaticIdentityProvider(IdentityProvider):
    """Identity provider that always reports the same owner (scripts and tests)"""
    
    def __init__(self, owner_id: Optional[str]):
        self.owner_id = owner_id
    
    def current_owner(self) -> Optional[str]:
        return self.owner_id
