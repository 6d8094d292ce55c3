"""Authorization adapter consulted before every mutating engine operation."""

from __future__ import annotations

from fnmatch import fnmatch
from typing import Dict, Iterable, Optional, Protocol


class PolicyEngine(Protocol):
    """Evaluates authorization policies at runtime."""

    async def can_perform(
        self, actor: str, organization_id: str, action: str, resource: str
    ) -> bool:
        """Return ``True`` if ``actor`` may perform ``action`` on ``resource``."""


class AllowAllPolicy:
    """Permits everything. The default when no policy is configured."""

    async def can_perform(
        self, actor: str, organization_id: str, action: str, resource: str
    ) -> bool:
        return True


class StaticGrantPolicy:
    """Grants actions to actors from a fixed table.

    ``grants`` maps an actor to action patterns (``fnmatch`` syntax, e.g.
    ``"workflow.*"``). ``organizations`` optionally restricts an actor to a
    set of tenants.
    """

    def __init__(
        self,
        grants: Dict[str, Iterable[str]],
        organizations: Optional[Dict[str, Iterable[str]]] = None,
    ) -> None:
        self._grants = {actor: list(patterns) for actor, patterns in grants.items()}
        self._organizations = {
            actor: set(orgs) for actor, orgs in (organizations or {}).items()
        }

    async def can_perform(
        self, actor: str, organization_id: str, action: str, resource: str
    ) -> bool:
        allowed_orgs = self._organizations.get(actor)
        if allowed_orgs is not None and organization_id not in allowed_orgs:
            return False
        return any(fnmatch(action, pattern) for pattern in self._grants.get(actor, []))
