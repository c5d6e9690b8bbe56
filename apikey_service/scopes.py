"""
Resource scope authorization.

A scope pattern is either an exact resource id or a literal prefix followed
by a trailing '*'. A key with no configured scopes (None) is unrestricted;
an empty list matches nothing.
"""
from dataclasses import dataclass
from typing import List, Optional

from apikey_service.errors import InsufficientScope
from apikey_service.models import WILDCARD, APIKey


def scope_matches(pattern: str, resource_id: str) -> bool:
    if pattern.endswith(WILDCARD):
        return resource_id.startswith(pattern[:-1])
    return resource_id == pattern


@dataclass
class ScopeDecision:
    allowed: bool
    reason: Optional[str] = None
    matched_pattern: Optional[str] = None


class ScopeAuthorizer:
    """
    Decide whether a key may act on a specific tenant resource.

    A key with no configured scopes (None) is unrestricted and may act on any
    resource. An empty list is a configured restriction that matches nothing.
    """

    def authorize(self, record: APIKey, resource_id: str) -> ScopeDecision:
        patterns: Optional[List[str]] = record.allowed_resource_scopes
        if patterns is None:
            return ScopeDecision(allowed=True)

        for pattern in patterns:
            if scope_matches(pattern, resource_id):
                return ScopeDecision(allowed=True, matched_pattern=pattern)

        return ScopeDecision(
            allowed=False,
            reason=f"Resource '{resource_id}' does not match any allowed scope",
        )

    def require(self, record: APIKey, resource_id: str) -> ScopeDecision:
        """
        Raises:
            InsufficientScope: If no pattern matches resource_id
        """
        decision = self.authorize(record, resource_id)
        if not decision.allowed:
            raise InsufficientScope(resource_id, record.allowed_resource_scopes)
        return decision
