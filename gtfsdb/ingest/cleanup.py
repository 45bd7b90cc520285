"""
Agency-Specific GTFS Cleanup

Some published feeds carry known defects. Each agency in the feed is reduced
to an identity key (lower-case, every non-letter replaced by "-") and, when a
rule is registered for that key, the rule detects the defect, repairs it and
re-checks that nothing is left. A rule either fixes every defective row or
leaves the store as it found it.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from gtfsdb.data.store_broker import FeedStore
from gtfsdb.errors import ConsistencyError, GtfsStoreError, InsertError, MatchError, SchemaError

from .schema import ImportCheckpoint

logger = logging.getLogger(__name__)

_NON_ALPHA = re.compile("[^a-z]")

STRONG_MATCH = "shape_id_fix_strong_match"
WEAK_MATCH = "shape_id_fix_weak_match"

# trip_id character (1-based) where the shape-like suffix starts, e.g.
# "A20111204SAT_021150_R..S95R" -> "R..S95R"
FUZZY_START = 21
WEAK_KEY_LENGTH = 4

MISSING_SHAPE = "coalesce(shape_id, '') = ''"


@dataclass
class CleanupResult:
    """Outcome of one cleanup rule."""

    agency: str
    defects: int = 0
    repaired: int = 0
    tiers: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ShapeMatch:
    fuzzy: str
    shape_id: str
    tier: str
    points: int


def agency_key(identity: str) -> str:
    """Simplify an agency identity, e.g. "MTA NYCT MTA New York City Transit" -> "mta-nyct-mta-new-york-city-transit"."""
    return _NON_ALPHA.sub("-", identity.lower())


def get_agencies(store: FeedStore) -> List[str]:
    """Identity keys of every agency in the feed, in table order, without repeats."""
    agency_id = "agency_id" if store.has_column("agency", "agency_id") else "''"
    agency_name = "agency_name" if store.has_column("agency", "agency_name") else "''"
    try:
        rows = store.execute(
            f"SELECT coalesce({agency_id}, '') || ' ' || coalesce({agency_name}, '') FROM agency;"
        ).fetchall()
    except SQLAlchemyError as e:
        raise SchemaError(f"failed to query for agencies [{getattr(e, 'orig', None) or e}]") from e

    keys = []
    for (identity,) in rows:
        key = agency_key(identity)
        if key not in keys:
            keys.append(key)
    return keys


# ============================================================================
# SHAPE MATCHING
# ============================================================================

def match_shape(fuzzy: str, candidates: Dict[str, int]) -> Optional[ShapeMatch]:
    """
    Pick the shape for a group of trips sharing a fuzzy key.

    Strong: shape_id equals the fuzzy key.
    Weak: the first WEAK_KEY_LENGTH characters of both are equal.

    Strong beats weak; within a tier the shape with more points wins, then
    the smallest shape_id.

    Args:
        fuzzy: trip_id suffix from FUZZY_START
        candidates: shape_id -> number of shape points

    Returns:
        Best ShapeMatch, or None when neither tier matches
    """
    weak_key = fuzzy[:WEAK_KEY_LENGTH]
    ranked = []
    for shape_id, points in candidates.items():
        if shape_id == fuzzy:
            tier, rank = STRONG_MATCH, 0
        elif shape_id[:WEAK_KEY_LENGTH] == weak_key:
            tier, rank = WEAK_MATCH, 1
        else:
            continue
        ranked.append(((rank, -points, shape_id), ShapeMatch(fuzzy, shape_id, tier, points)))

    if not ranked:
        return None
    return min(ranked, key=lambda r: r[0])[1]


def _shape_points(store: FeedStore) -> Dict[str, int]:
    rows = store.execute("SELECT shape_id, count(*) FROM shapes GROUP BY shape_id;")
    return {shape_id: points for shape_id, points in rows}


def _defect_groups(store: FeedStore) -> List[str]:
    rows = store.execute(
        f"SELECT DISTINCT substr(trip_id, {FUZZY_START}) FROM trips WHERE {MISSING_SHAPE};"
    )
    return [fuzzy or "" for (fuzzy,) in rows]


def clean_trip_shapes(store: FeedStore, agency: str) -> CleanupResult:
    """
    Backfill trips.shape_id from the shapes table.

    Some feeds ship shapes but leave trips.shape_id empty; the shape id is
    embedded at the end of trip_id instead (e.g. "R..S95R", "SI.N30R",
    "6..N52X010"). Every repaired trip is tagged in trips.x_clean with the
    tier that matched.

    A trips table without a shape_id column gets an empty one before
    detection; that column stays even when the rule fails.

    Raises:
        SchemaError: trips (or shapes, with defects present) cannot be read
        MatchError: a group of trips has no candidate shape (nothing written)
        ConsistencyError: defects remain after the repair (rolled back)
    """
    result = CleanupResult(agency)

    if not store.has_table("trips"):
        raise SchemaError("cannot repair trip shapes: trips table is missing")

    try:
        if not store.has_column("trips", "shape_id"):
            store.execute_raw('ALTER TABLE "trips" ADD COLUMN "shape_id" text;')
            store.commit()
        result.defects = store.count("trips", where=MISSING_SHAPE)
    except SQLAlchemyError as e:
        store.rollback()
        raise SchemaError(f"failed to query trips for missing shapes [{getattr(e, 'orig', None) or e}]") from e

    if result.defects == 0:
        logger.info(f"{agency}: no trips missing shape_id")
        return result

    if not store.has_table("shapes"):
        raise MatchError(f"{result.defects} trips missing shape_id, but feed has no shapes")

    try:
        candidates = _shape_points(store)
        groups = _defect_groups(store)
    except SQLAlchemyError as e:
        raise SchemaError(f"failed to query shape candidates [{getattr(e, 'orig', None) or e}]") from e

    # resolve every group before writing anything
    matches = []
    for fuzzy in groups:
        match = match_shape(fuzzy, candidates)
        if match is None:
            raise MatchError(f"failed to determine new shape for trips ending {fuzzy!r}")
        matches.append(match)

    try:
        with store.transaction():
            # a DML statement opens the transaction, so the ALTER below is rolled back with it
            store.connection.execute(
                update(ImportCheckpoint)
                .where(ImportCheckpoint.tablename == "trips")
                .values(cleaned=agency)
            )
            if not store.has_column("trips", "x_clean"):
                store.execute_raw('ALTER TABLE "trips" ADD COLUMN "x_clean" text;')

            for match in matches:
                patched = store.execute(
                    f"UPDATE trips SET shape_id = :shape_id, x_clean = :tier "
                    f"WHERE {MISSING_SHAPE} AND substr(trip_id, {FUZZY_START}) = :fuzzy;",
                    {"shape_id": match.shape_id, "tier": match.tier, "fuzzy": match.fuzzy},
                ).rowcount
                result.repaired += patched
                result.tiers[match.tier] = result.tiers.get(match.tier, 0) + patched
                logger.debug(f"{agency}: {patched} trips '{match.fuzzy}' -> {match.shape_id} ({match.tier})")

            remaining = store.count("trips", where=MISSING_SHAPE)
            if remaining > 0:
                raise ConsistencyError(f"failed to fully patch shapes: {remaining} still missing")
    except SQLAlchemyError as e:
        raise InsertError(f"failed to patch with new shape [{getattr(e, 'orig', None) or e}]") from e

    logger.info(
        f"✓ {agency}: repaired {result.repaired} of {result.defects} trips "
        f"({result.tiers.get(STRONG_MATCH, 0)} strong, {result.tiers.get(WEAK_MATCH, 0)} weak)"
    )
    return result


# Agency identity key -> cleanup rule
CLEANUP_RULES: Dict[str, Callable[[FeedStore, str], CleanupResult]] = {
    "mta-nyct-mta-new-york-city-transit": clean_trip_shapes,
}


def clean_feed(store: FeedStore) -> List[CleanupResult]:
    """
    Run the registered rule for each agency in the feed.

    Returns:
        One CleanupResult per rule that ran
    """
    if not store.has_table("agency"):
        logger.warning("No agency table; skipping cleanup")
        return []

    results = []
    for agency in get_agencies(store):
        rule = CLEANUP_RULES.get(agency)
        if rule is None:
            logger.debug(f"No cleanup rule for {agency}")
            continue

        logger.info(f"Cleaning GTFS for {agency}")
        try:
            results.append(rule(store, agency))
        except GtfsStoreError as e:
            raise type(e)(f"{agency}: {e}") from e
    return results
