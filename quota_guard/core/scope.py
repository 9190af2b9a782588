"""
Tenant scope identity.

A scope is either a whole agency or one sub-account of it. Storage never uses
NULL for the sub-account column: agency-wide rows carry the empty string so
unique constraints treat them like any other value.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

NO_SUB_ACCOUNT = ""


class ScopeKind(Enum):
    """Tenant granularity a metered record belongs to."""
    AGENCY = "AGENCY"
    SUBACCOUNT = "SUBACCOUNT"


@dataclass(frozen=True)
class Scope:
    """Who is consuming: an agency, optionally narrowed to one sub-account."""
    kind: ScopeKind
    agency_id: str
    sub_account_id: Optional[str] = None

    @classmethod
    def agency(cls, agency_id: str) -> "Scope":
        return cls(ScopeKind.AGENCY, agency_id)

    @classmethod
    def sub_account(cls, agency_id: str, sub_account_id: str) -> "Scope":
        return cls(ScopeKind.SUBACCOUNT, agency_id, sub_account_id)

    def validation_error(self) -> Optional[str]:
        """Describe why this scope is malformed, or ``None`` if it is valid."""
        if not isinstance(self.kind, ScopeKind):
            return f"unknown scope kind {self.kind!r}"
        if not _present(self.agency_id):
            return "agency_id is required"
        if self.kind is ScopeKind.SUBACCOUNT and not _present(self.sub_account_id):
            return "sub_account_id is required for SUBACCOUNT scope"
        if self.kind is ScopeKind.AGENCY and _present(self.sub_account_id):
            return "AGENCY scope must not carry a sub_account_id"
        return None

    @property
    def storage_columns(self) -> Tuple[str, str, str]:
        """``(scope, agency_id, sub_account_id)`` as persisted."""
        return (self.kind.value, self.agency_id, self.sub_account_id or NO_SUB_ACCOUNT)

    def key(self, feature_key: str) -> "ScopeKey":
        return ScopeKey(self, feature_key)

    def __str__(self) -> str:
        if self.kind is ScopeKind.SUBACCOUNT:
            return f"{self.agency_id}/{self.sub_account_id}"
        return self.agency_id


@dataclass(frozen=True)
class ScopeKey:
    """A scope narrowed to one billable feature."""
    scope: Scope
    feature_key: str

    def validation_error(self) -> Optional[str]:
        error = self.scope.validation_error()
        if error:
            return error
        if not _present(self.feature_key):
            return "feature_key is required"
        return None

    @property
    def storage_columns(self) -> Tuple[str, str, str, str]:
        """``(scope, agency_id, sub_account_id, feature_key)`` as persisted."""
        return self.scope.storage_columns + (self.feature_key,)

    @classmethod
    def from_row(cls, row) -> "ScopeKey":
        scope = Scope(
            kind=ScopeKind(row["scope"]),
            agency_id=row["agency_id"],
            sub_account_id=row["sub_account_id"] or None,
        )
        return cls(scope, row["feature_key"])

    def __str__(self) -> str:
        return f"{self.scope.kind.value}:{self.scope}:{self.feature_key}"


def _present(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(value.strip())
