"""
Per-record reconciliation.

    fetch -> dedup key -> existing link?  yes -> add source      (duplicate)
                                          no  -> match + insert  (direct_id,
                                                                  fallback_match,
                                                                  unmatched)

The insert is optimistic. When the unique constraint on the dedup key rejects
it, another worker created the link first; the record id is merged into that
link instead. Concurrent workers never lock each other out.
"""

from typing import Optional, Tuple

from .database import LinkRecord, LinkSource
from .errors import DuplicateKeyConflict, InsufficientKeyFields, SourceNotFound, StorageFatal
from .logger import StructuredLogger, get_logger
from .matcher import Matcher
from .normalize import dedup_key
from .records import IncomingRecord, MatchResult, MatchType, OutcomeStatus, ReconcileOutcome
from .repositories import LinkRepository


class Reconciler:
    """
    Turns one CRM record id into one outcome and at most one storage mutation.

    Raises only UpstreamTransient (from the fetcher) or StorageFatal; every
    other result comes back as a ReconcileOutcome.
    """

    def __init__(
        self,
        fetcher,
        links: LinkRepository,
        matcher: Matcher,
        logger: Optional[StructuredLogger] = None,
    ):
        self.fetcher = fetcher
        self.links = links
        self.matcher = matcher
        self.logger = logger or get_logger()

    def reconcile(self, record_id: str) -> ReconcileOutcome:
        try:
            record = self.fetcher.fetch_record(record_id)
        except SourceNotFound as e:
            self.logger.warning("CRM record not found", record_id=record_id, reason=e.reason)
            return ReconcileOutcome(record_id, OutcomeStatus.NOT_FOUND, reason=e.reason)
        return self.reconcile_record(record)

    def reconcile_record(self, record: IncomingRecord) -> ReconcileOutcome:
        try:
            key = self._key_for(record)
        except InsufficientKeyFields as e:
            self.logger.debug("Skipping record", record_id=record.record_id)
            return ReconcileOutcome(record.record_id, OutcomeStatus.SKIPPED, reason=str(e))

        existing = self.links.find_by_key(key)
        if existing is not None:
            return self._merge(existing.id, record)

        match = self.matcher.match(record)
        try:
            link = self.links.insert(self._build_link(record, key, match))
        except DuplicateKeyConflict:
            self.logger.debug("Lost insert race, merging", record_id=record.record_id, key=list(key))
            winner = self.links.find_by_key(key)
            if winner is None:
                raise StorageFatal(
                    f"Insert for {record.record_id} was rejected but no link exists for key {key!r}"
                )
            return self._merge(winner.id, record)

        return ReconcileOutcome(
            record.record_id,
            OutcomeStatus.SUCCESS,
            match_type=match.match_type,
            link_id=link.id,
        )

    @staticmethod
    def _key_for(record: IncomingRecord) -> Tuple[str, str]:
        key = dedup_key(record.website, record.address)
        if not any(key):
            raise InsufficientKeyFields(record.record_id)
        return key

    def _merge(self, link_id: int, record: IncomingRecord) -> ReconcileOutcome:
        added = self.links.add_source(link_id, record.record_id)
        if not added:
            self.logger.debug("Source already linked", record_id=record.record_id, link_id=link_id)
        return ReconcileOutcome(
            record.record_id,
            OutcomeStatus.SUCCESS,
            match_type=MatchType.DUPLICATE,
            link_id=link_id,
        )

    @staticmethod
    def _build_link(record: IncomingRecord, key: Tuple[str, str], match: MatchResult) -> LinkRecord:
        website, address = key
        return LinkRecord(
            dedup_website=website,
            dedup_address=address,
            business_id=match.business_id,
            match_type=match.match_type.value,
            name=record.name or None,
            website=record.website or None,
            address=record.address or None,
            phone=record.phone or None,
            email=record.email or None,
            sources=[LinkSource(source_id=record.record_id)],
        )
