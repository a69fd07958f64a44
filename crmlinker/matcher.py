"""
Tiered business matching.

1. Direct ID: legacy identifier equality. Accepted only on a single hit.
2. Fallback: website host match AND at least one secondary field
   (name, phone, email, address). Accepted only on a single hit.
3. Unmatched.

Ambiguous results never pick a winner; they fall through to the next tier.
"""

from typing import List, Optional

from .database import Business
from .logger import StructuredLogger, get_logger
from .normalize import host_forms, normalize_host, normalize_text, phones_match
from .records import IncomingRecord, MatchResult, MatchType
from .repositories import BusinessRepository


def _contains(needle: str, haystack: str) -> bool:
    return bool(needle) and needle in haystack


def secondary_field_matches(record: IncomingRecord, business: Business) -> List[str]:
    """Names of the secondary fields on which record and business agree."""
    matched = []
    if _contains(normalize_text(record.name), normalize_text(business.name)):
        matched.append("name")
    if phones_match(record.phone, business.phone):
        matched.append("phone")
    if _contains(normalize_text(record.email), normalize_text(business.email)):
        matched.append("email")
    if _contains(normalize_text(record.address), normalize_text(business.full_address)):
        matched.append("address")
    return matched


class Matcher:
    """Finds at most one business for an incoming record."""

    def __init__(self, businesses: BusinessRepository, logger: Optional[StructuredLogger] = None):
        self.businesses = businesses
        self.logger = logger or get_logger()

    def match(self, record: IncomingRecord) -> MatchResult:
        result = self._match_direct_id(record)
        if result.is_match:
            return result

        # Carries match_type=unmatched and the candidate count when nothing qualified
        return self._match_fallback(record)

    def _match_direct_id(self, record: IncomingRecord) -> MatchResult:
        if not record.legacy_id:
            return MatchResult()

        hits = self.businesses.find_by_legacy_id(record.legacy_id)
        if len(hits) == 1:
            return MatchResult(
                business_id=hits[0].id,
                match_type=MatchType.DIRECT_ID,
                candidates=1,
            )
        if len(hits) > 1:
            self.logger.warning(
                "Ambiguous legacy id, falling through to fallback tier",
                record_id=record.record_id,
                legacy_id=record.legacy_id,
                candidates=len(hits),
            )
        return MatchResult(candidates=len(hits))

    def _match_fallback(self, record: IncomingRecord) -> MatchResult:
        host = normalize_host(record.website)
        if not host or not record.has_secondary_fields():
            return MatchResult()

        candidates = self.businesses.find_by_website_hosts(host_forms(host))
        hits = [b for b in candidates if secondary_field_matches(record, b)]

        if len(hits) == 1:
            return MatchResult(
                business_id=hits[0].id,
                match_type=MatchType.FALLBACK_MATCH,
                candidates=1,
            )
        if len(hits) > 1:
            self.logger.debug(
                "Ambiguous fallback match discarded",
                record_id=record.record_id,
                host=host,
                candidates=len(hits),
            )
        return MatchResult(candidates=len(hits))
