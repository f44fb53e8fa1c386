"""
Scope resolution: decides, per requested scope, whether it is denied,
applied automatically, already approved, approved in this request, or
still waiting for the user's consent.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable

from authlib.oauth2.rfc6749.util import scope_to_list


class ScopeStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED_NOW = 'approved_now'
    PREVIOUSLY_APPROVED = 'previously_approved'
    AUTO_APPLIED = 'auto_applied'
    DENIED = 'denied'


@dataclass
class ScopeAuthorizationRequest:
    """One scope's approval status inside a client authorization request."""
    scope: object
    status: ScopeStatus = ScopeStatus.PENDING

    @property
    def identifier(self) -> str:
        return getattr(self.scope, 'identifier', self.scope)


@dataclass(frozen=True)
class ScopeResolution:
    requested: tuple = ()
    pending: tuple = ()
    approved_now: tuple = ()
    previously_approved: tuple = ()
    auto_applied: tuple = ()
    denied: tuple = ()

    @property
    def granted(self) -> tuple:
        """Scopes that may be put in a token right now, in requested order."""
        allowed = set(self.auto_applied) | set(self.previously_approved) | set(self.approved_now)
        return tuple(s for s in self.requested if s in allowed)

    def status_of(self, identifier: str) -> ScopeStatus | None:
        for status, bucket in (
            (ScopeStatus.DENIED, self.denied),
            (ScopeStatus.AUTO_APPLIED, self.auto_applied),
            (ScopeStatus.PREVIOUSLY_APPROVED, self.previously_approved),
            (ScopeStatus.APPROVED_NOW, self.approved_now),
            (ScopeStatus.PENDING, self.pending),
        ):
            if identifier in bucket:
                return status
        return None


def normalize_scope_identifiers(scopes) -> list[str]:
    """Accept a space separated string or an iterable, drop duplicates, keep order."""
    if scopes is None:
        return []
    if isinstance(scopes, str):
        scopes = scope_to_list(scopes) or []
    result = []
    for s in scopes:
        s = getattr(s, 'identifier', s)
        if s and s not in result:
            result.append(s)
    return result


def resolve_scopes(requested: Iterable[str], client_defined: Iterable[str],
                   previously_approved: Iterable[str], client_auto: Iterable[str],
                   approved_now: Iterable[str] = ()) -> ScopeResolution:
    """Partition ``requested`` into the five scope buckets.

    Rules are applied in order, the first that matches wins:

    1. not defined for the client: denied
    2. configured as automatic for the client: auto applied
    3. approved by the user earlier: previously approved
    4. approved by the user in this request: approved now
    5. anything else: pending
    """
    requested = normalize_scope_identifiers(requested)
    defined = set(normalize_scope_identifiers(client_defined))
    auto = set(normalize_scope_identifiers(client_auto))
    previous = set(normalize_scope_identifiers(previously_approved))
    now = set(normalize_scope_identifiers(approved_now))

    buckets = {status: [] for status in ScopeStatus}
    for identifier in requested:
        if identifier not in defined:
            status = ScopeStatus.DENIED
        elif identifier in auto:
            status = ScopeStatus.AUTO_APPLIED
        elif identifier in previous:
            status = ScopeStatus.PREVIOUSLY_APPROVED
        elif identifier in now:
            status = ScopeStatus.APPROVED_NOW
        else:
            status = ScopeStatus.PENDING
        buckets[status].append(identifier)

    return ScopeResolution(
        requested=tuple(requested),
        pending=tuple(buckets[ScopeStatus.PENDING]),
        approved_now=tuple(buckets[ScopeStatus.APPROVED_NOW]),
        previously_approved=tuple(buckets[ScopeStatus.PREVIOUSLY_APPROVED]),
        auto_applied=tuple(buckets[ScopeStatus.AUTO_APPLIED]),
        denied=tuple(buckets[ScopeStatus.DENIED]),
    )
