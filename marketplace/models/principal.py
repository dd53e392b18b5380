from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Verified identity handed to the enrollment routes.

    Built from the bearer JWT issued by the identity provider.  The
    enrollment core trusts user_id as-is; it never reads a user id from a
    request body.
    """

    user_id: str
    roles: frozenset[str]
