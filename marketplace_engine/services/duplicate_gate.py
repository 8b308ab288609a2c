"""
Duplicate detection gate for design submissions.

Fingerprints a candidate image, compares it against the fingerprints of
previously accepted designs and rejects near-duplicates.
"""

from typing import List, Optional

import structlog

from marketplace_engine import config
from marketplace_engine.core.exceptions import DuplicateDesignError, StorageError
from marketplace_engine.models.catalog import DesignSubmission, SubmissionStatus
from marketplace_engine.models.similarity import DuplicateCheckResult, FingerprintMatch
from marketplace_engine.services import image_hash

logger = structlog.get_logger()


class DuplicateGate:
    def __init__(self, store, image_store=None, threshold: Optional[float] = None, fail_open: Optional[bool] = None):
        """
        Args:
            store: relational store exposing transaction()
            image_store: used by submit_design to fetch images by reference
            threshold: similarity above which a design is a duplicate
            fail_open: let designs through when the index is unreachable.
                Off by default: an unreachable index blocks the submission.
        """
        self._store = store
        self._image_store = image_store
        self.threshold = config.DUPLICATE_SIMILARITY_THRESHOLD if threshold is None else threshold
        self.fail_open = config.DUPLICATE_CHECK_FAIL_OPEN if fail_open is None else fail_open

    def find_matches(self, fingerprint: str, indexed: List[tuple]) -> List[FingerprintMatch]:
        """Matches strictly above the threshold, most similar first."""
        matches = []
        for product_id, stored_fingerprint in indexed:
            similarity = image_hash.hash_similarity(fingerprint, stored_fingerprint)
            if similarity > self.threshold:
                matches.append(FingerprintMatch(product_id=product_id, similarity=similarity))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches

    def _scan_index(self, tx, fingerprint: str, product_id: Optional[str]) -> List[FingerprintMatch]:
        """Compare against the index and, if unique, upsert under product_id."""
        tx.lock_fingerprint_index()
        indexed = tx.list_fingerprints(exclude_product_id=product_id)
        matches = self.find_matches(fingerprint, indexed)
        if not matches and product_id:
            tx.upsert_fingerprint(product_id, fingerprint)
        logger.debug("Fingerprint index scanned", product_id=product_id, indexed_count=len(indexed))
        return matches

    def check_duplicate(self, image_bytes: bytes, product_id: Optional[str] = None) -> DuplicateCheckResult:
        """
        Check a candidate image against the index of accepted designs.

        When the image is not a duplicate and product_id is given, its
        fingerprint is upserted into the index under that product.
        """
        fingerprint = image_hash.dhash(image_bytes)

        try:
            with self._store.transaction() as tx:
                matches = self._scan_index(tx, fingerprint, product_id)
        except StorageError as e:
            if not self.fail_open:
                logger.error("Fingerprint index unavailable, blocking submission",
                             product_id=product_id, error=str(e))
                raise
            logger.warning("Fingerprint index unavailable, allowing submission (fail-open)",
                           product_id=product_id, error=str(e))
            return DuplicateCheckResult(
                is_duplicate=False,
                fingerprint=fingerprint,
                threshold=self.threshold,
                index_checked=False,
            )

        is_duplicate = bool(matches)
        logger.info("Duplicate check completed",
                    product_id=product_id,
                    fingerprint=fingerprint,
                    matches_found=len(matches),
                    is_duplicate=is_duplicate,
                    threshold=self.threshold)

        return DuplicateCheckResult(
            is_duplicate=is_duplicate,
            matches=matches,
            fingerprint=fingerprint,
            threshold=self.threshold,
            indexed_product_id=product_id if (product_id and not is_duplicate) else None,
        )

    def submit_design(
        self,
        designer_id: str,
        product_id: str,
        image_reference: str,
        image_bytes: Optional[bytes] = None,
    ) -> DesignSubmission:
        """
        Gate a design submission and persist its outcome.

        The index scan, fingerprint upsert and submission row are written in
        one transaction. Storage failures always propagate here: without the
        store there is nowhere to record the submission.

        Raises:
            DuplicateDesignError: the design matches an accepted design; the
                rejected submission is still recorded.
        """
        if image_bytes is None:
            if self._image_store is None:
                raise StorageError("No image store configured to fetch the design image")
            image_bytes = self._image_store.fetch_image_bytes(image_reference)

        fingerprint = image_hash.dhash(image_bytes)

        with self._store.transaction() as tx:
            found = self._scan_index(tx, fingerprint, product_id)
            matches = [m.model_dump() for m in found]
            submission = DesignSubmission(
                designer_id=designer_id,
                product_id=product_id,
                image_reference=image_reference,
                fingerprint=fingerprint,
                status=SubmissionStatus.REJECTED_DUPLICATE if matches else SubmissionStatus.ACCEPTED,
                matches=matches,
            )
            tx.insert_submission(submission)

        logger.info("Design submission recorded",
                    submission_id=submission.id, designer_id=designer_id,
                    product_id=product_id, status=submission.status,
                    matches_found=len(matches))

        if matches:
            raise DuplicateDesignError(
                f"This design appears similar to {len(matches)} existing design(s).",
                matches=matches,
            )
        return submission
