import hashlib
import hmac
import polars as pl
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from src.shared.errors import AuthError, PermissionDenied

ADMIN_ROLE = "admin"

@dataclass(frozen=True)
class Principal:
    user_id: str
    roles: FrozenSet[str]

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenRegistry:
    """
    Resolves bearer tokens against the 'users' table.

    Only SHA-256 digests of the tokens are stored
    (columns: user_id, api_token_sha256, roles as 'admin|player').
    """

    def __init__(self, users: Optional[pl.DataFrame] = None):
        self._by_digest: Dict[str, Principal] = {}
        if users is not None and not users.is_empty():
            for row in users.iter_rows(named=True):
                digest = row.get("api_token_sha256")
                if not digest:
                    continue
                roles = frozenset(r.strip() for r in (row.get("roles") or "").split("|") if r.strip())
                self._by_digest[digest.lower()] = Principal(user_id=str(row["user_id"]), roles=roles)

    def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise AuthError("Unauthorized")
        digest = hash_token(token)
        for known, principal in self._by_digest.items():
            if hmac.compare_digest(known, digest):
                return principal
        raise AuthError("Invalid token")

    def require_admin(self, token: Optional[str]) -> Principal:
        principal = self.authenticate(token)
        if not principal.is_admin:
            raise PermissionDenied("Admin role required")
        return principal
