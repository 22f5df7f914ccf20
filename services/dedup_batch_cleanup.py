"""Periodic reconciliation of duplicate tasks.

The dedup gateway takes no locks, so two concurrent checks of the same new
task can both return CREATE. This job finds stored task pairs with similar
embeddings, asks the arbiter about all of them in one call, and merges the
pairs it is confident about through an injected merge callback.
"""

from typing import Optional

from config import get_settings
from models.errors import ErrorType
from models.resolution import CleanupResult, DedupPair, SimilarPair
from services.arbiter import LlmArbiter
from services.stores.base import BaseCandidateStore, MergeCallback
from utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class DedupBatchCleanupJob:
    def __init__(
        self,
        store: BaseCandidateStore,
        arbiter: LlmArbiter,
        merge: Optional[MergeCallback] = None,
    ):
        settings = get_settings()
        self.store = store
        self.arbiter = arbiter
        self.merge = merge
        self.min_similarity = settings.batch_cleanup_min_similarity
        self.max_pairs = settings.batch_cleanup_max_pairs
        self.auto_merge_threshold = settings.dedup_auto_merge_threshold

    async def run(self) -> CleanupResult:
        """Run one reconciliation pass. Never raises."""
        async with LogContext(run_id=LogContext.new_run_id()):
            return await self._reconcile()

    async def _reconcile(self) -> CleanupResult:
        result = CleanupResult()

        try:
            pairs = await self.store.find_similar_pairs(self.min_similarity, self.max_pairs)
        except Exception as e:
            logger.error(
                f"Batch dedup: failed to load similar pairs: {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.DATABASE_ERROR},
            )
            return result

        if not pairs:
            logger.info("Batch dedup: no similar pairs found")
            return result

        result.pairs_checked = len(pairs)
        results = await self.arbiter.decide_batch(
            [DedupPair(new_item=pair.first, existing_item=pair.second) for pair in pairs]
        )

        if self.merge is None:
            logger.warning("Batch dedup: merge capability unavailable, skipping merges")
            return result

        merged_away: set[str] = set()
        for pair, arbitration in zip(pairs, results):
            if not arbitration.is_duplicate or arbitration.confidence < self.auto_merge_threshold:
                continue

            keep_id, duplicate_id = self._merge_direction(pair, arbitration.merge_into_id)
            if keep_id is None:
                logger.warning(
                    f"Batch dedup: merge target {arbitration.merge_into_id!r} "
                    f"is not part of pair {pair.first.id}/{pair.second.id}",
                    extra={"error_type": ErrorType.HALLUCINATED_ID},
                )
                continue
            if keep_id in merged_away or duplicate_id in merged_away:
                continue

            try:
                await self.merge(keep_id, duplicate_id)
            except Exception as e:
                result.failed += 1
                logger.error(
                    f"Batch dedup: failed to merge {duplicate_id} into {keep_id}: {e}",
                    extra={"error_type": ErrorType.MERGE_FAILURE},
                )
                continue

            merged_away.add(duplicate_id)
            result.merged += 1
            logger.info(
                f"Batch dedup: merged {duplicate_id} into {keep_id}",
                extra={"confidence": arbitration.confidence, "similarity": pair.similarity},
            )

        logger.info(
            f"Batch dedup complete: checked={result.pairs_checked} "
            f"merged={result.merged} failed={result.failed}"
        )
        return result

    @staticmethod
    def _merge_direction(
        pair: SimilarPair, merge_into_id: Optional[str]
    ) -> tuple[Optional[str], Optional[str]]:
        """(keep_id, duplicate_id); (None, None) for a target outside the pair."""
        if merge_into_id == pair.first.id:
            return pair.first.id, pair.second.id
        if merge_into_id == pair.second.id:
            return pair.second.id, pair.first.id
        return None, None
