"""
Post-ingestion validation

Re-reads the record store after a run, checks that the leaderboards answer
and that the store's totals moved by exactly what the run applied.
Mismatches are reported, never raised.
"""
import logging
import time
from typing import Dict, Optional

from models.validation_summary import ReconciliationMismatch, ValidationSummary
from utils.leaderboard import LeaderboardService
from utils.record_store import TOTAL_FIELDS, empty_totals

logger = logging.getLogger(__name__)

VALIDATED_METRICS = ("kills", "deaths", "kd")


class ValidationEngine:
    """Audits a server's statistics after ingestion

    Args:
        record_store: RecordStore to query
        top_limit: Size of the leaderboards that are checked
    """

    def __init__(self, record_store, top_limit: int = 10):
        self.record_store = record_store
        self.top_limit = top_limit
        self.leaderboards = LeaderboardService(record_store, default_limit=top_limit)

    async def snapshot_totals(self, ctx) -> Optional[Dict[str, int]]:
        """Totals before a run, used as the reconciliation baseline

        Returns:
            Totals dict, or None if the store could not be read
        """
        if ctx.is_restricted():
            return empty_totals()
        try:
            return await self.record_store.aggregate_totals(ctx.guild_id, ctx.server_id)
        except Exception as e:
            logger.warning(f"Could not snapshot totals for {ctx.guild_id}/{ctx.server_id}: {e}")
            return None

    async def validate(self, ctx, result, baseline: Optional[Dict[str, int]] = None) -> ValidationSummary:
        """Validate a server after an ingestion run

        Args:
            ctx: Active isolation context
            result: IngestionResult of the run
            baseline: Totals taken before the run, skips reconciliation if None

        Returns:
            ValidationSummary, ``successful`` is False only if validation itself failed
        """
        start_time = time.time()
        summary = ValidationSummary(
            guild_id=ctx.guild_id,
            server_id=ctx.server_id,
            files_processed=result.files_processed,
            lines_processed=result.lines_processed,
            error_count=len(result.errors),
            parse_errors=result.parse_errors,
        )

        try:
            top_counts = {}
            for metric in VALIDATED_METRICS:
                top_counts[metric] = len(await self.leaderboards.top(ctx, metric, self.top_limit))
            summary.top_kills_count = top_counts["kills"]
            summary.top_deaths_count = top_counts["deaths"]
            summary.top_kd_count = top_counts["kd"]

            if ctx.is_restricted():
                summary.restricted = True
                logger.info(f"Validation for {ctx.mode.value} server {ctx.guild_id}/{ctx.server_id}: nothing to reconcile")
                return summary

            totals = await self.record_store.aggregate_totals(ctx.guild_id, ctx.server_id)
            summary.total_players = totals.get("players", 0)
            summary.total_kills = totals.get("kills", 0)
            summary.total_deaths = totals.get("deaths", 0)
            summary.total_suicides = totals.get("suicides", 0)

            if baseline is not None:
                summary.mismatches = self.reconcile(result, baseline, totals)
                for mismatch in summary.mismatches:
                    logger.warning(
                        f"Reconciliation mismatch for {ctx.guild_id}/{ctx.server_id}: {mismatch.field_name} "
                        f"expected +{mismatch.expected}, store moved +{mismatch.actual}"
                    )

            logger.info(
                f"Validation for {ctx.guild_id}/{ctx.server_id}: {summary.top_kills_count} kills, "
                f"{summary.top_deaths_count} deaths, {summary.top_kd_count} KD entries"
            )
        except Exception as e:
            logger.error(f"Validation failed for {ctx.guild_id}/{ctx.server_id}: {e}", exc_info=True)
            summary.successful = False
            summary.error_message = str(e) or type(e).__name__
        finally:
            summary.elapsed_time = time.time() - start_time

        return summary

    @staticmethod
    def reconcile(result, baseline: Dict[str, int], totals: Dict[str, int]):
        """Compare how far the store moved with what the run applied"""
        expected = {"kills": result.kills, "deaths": result.deaths, "suicides": result.suicides}
        mismatches = []
        for name in TOTAL_FIELDS:
            if name not in expected:
                continue
            actual = totals.get(name, 0) - baseline.get(name, 0)
            if actual != expected[name]:
                mismatches.append(ReconciliationMismatch(field_name=name, expected=expected[name], actual=actual))
        return mismatches
