"""
Value types passed between the client, matcher, reconciler and worker pool.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class MatchType(str, Enum):
    """Label stored on a link record and reported per outcome."""
    DUPLICATE = "duplicate"            # dedup key already linked
    DIRECT_ID = "direct_id"            # legacy id equality, single hit
    FALLBACK_MATCH = "fallback_match"  # website + secondary field, single hit
    UNMATCHED = "unmatched"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"


# CRM payload field -> IncomingRecord attribute
FIELD_MAP = {
    "name_1": "name",
    "site_1": "website",
    "phone_1": "phone",
    "email_1": "email",
    "full_address_1": "address",
}
LEGACY_ID_FIELDS = ("Unique_ID_1", "Unique_ID")


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class IncomingRecord:
    """A CRM record as fetched. Never mutated."""
    record_id: str
    name: str = ""
    website: str = ""
    phone: str = ""
    email: str = ""
    address: str = ""
    legacy_id: Optional[str] = None

    @classmethod
    def from_api(cls, record_id: str, payload: Dict[str, Any]) -> "IncomingRecord":
        fields = {attr: _clean(payload.get(key)) for key, attr in FIELD_MAP.items()}
        legacy_id = None
        for key in LEGACY_ID_FIELDS:
            value = _clean(payload.get(key))
            if value:
                legacy_id = value
                break
        return cls(record_id=record_id, legacy_id=legacy_id, **fields)

    def has_secondary_fields(self) -> bool:
        return any((self.name, self.phone, self.email, self.address))


@dataclass(frozen=True)
class MatchResult:
    business_id: Optional[int] = None
    match_type: MatchType = MatchType.UNMATCHED
    candidates: int = 0

    @property
    def is_match(self) -> bool:
        return self.business_id is not None


@dataclass(frozen=True)
class ReconcileOutcome:
    """What happened to one record. The worker loop logs and counts these."""
    record_id: str
    status: OutcomeStatus
    match_type: Optional[MatchType] = None
    link_id: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"record_id": self.record_id, "status": self.status.value}
        if self.match_type is not None:
            data["match_type"] = self.match_type.value
        if self.link_id is not None:
            data["link_id"] = self.link_id
        if self.reason:
            data["reason"] = self.reason
        return data
