"""Sync curated alias seed specs into the stop_aliases table.

A seed spec names a target stop ("Zürich HB") and the aliases that should
find it ("Zurich main station", "ZH HB"). The target is resolved by name
against the current gazetteer on every sync, so aliases follow stop id
changes between feed versions.
"""

import csv
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from stop_search.data.search_index import ensure_alias_tables
from stop_search.matching.normalizers import normalize_search_text, remove_accents
from stop_search.matching.ranker import is_parent_like

logger = logging.getLogger(__name__)

SEED_SOURCE = "seed_spec"
SEED_COLUMNS = ("canonical_key", "target_name", "alias_text", "weight")
INACTIVE_VALUES = {"0", "f", "false", "no", "n", "off"}

UPSERT_ALIAS_SQL = """
INSERT INTO stop_aliases (alias_text, alias_norm, stop_id, weight, canonical_key, source, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (alias_text) DO UPDATE SET
    alias_norm = excluded.alias_norm,
    stop_id = excluded.stop_id,
    weight = excluded.weight,
    canonical_key = excluded.canonical_key,
    source = excluded.source,
    updated_at = excluded.updated_at
"""


class SeedAlias(BaseModel):
    alias_text: str
    alias_norm: str
    weight: float = 1.0


class AliasSeedSpec(BaseModel):
    """All aliases of one canonical key and the stop name they should point to."""

    canonical_key: str
    target_name: str
    target_norm: str
    aliases: list[SeedAlias] = Field(default_factory=list)


class StopRef(BaseModel):
    stop_id: str
    stop_name: str


class ResolvedAlias(BaseModel):
    canonical_key: str
    target_name: str
    stop_id: str
    stop_name: str
    aliases_upserted: int
    reason: str | None = None
    candidates: list[StopRef] | None = None


class UnresolvedAlias(BaseModel):
    canonical_key: str
    target_name: str
    reason: str
    candidates: list[StopRef] | None = None


class SyncIssue(BaseModel):
    reason: str
    detail: str


class AliasSyncReport(BaseModel):
    """Outcome of one sync run, printed as JSON by the CLI."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    status: str = "success"
    degraded: bool = False
    resolved: list[ResolvedAlias] = Field(default_factory=list)
    kept_previous: list[ResolvedAlias] = Field(default_factory=list)
    skipped_ambiguous: list[UnresolvedAlias] = Field(default_factory=list)
    missing_target: list[UnresolvedAlias] = Field(default_factory=list)
    errors: list[SyncIssue] = Field(default_factory=list)

    def finalize(self) -> "AliasSyncReport":
        """Set degraded/status from the collected entries."""
        self.degraded = bool(self.errors or self.skipped_ambiguous or self.missing_target)
        self.status = "success_with_degraded_search" if self.degraded else "success"
        return self


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _weight(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 1.0


def group_seed_rows(rows: list[dict[str, Any]]) -> list[AliasSeedSpec]:
    """Group seed rows by canonical key, dropping incomplete rows and duplicate aliases.

    The first row of a key fixes its target name. Specs come back sorted by key.
    """
    specs: dict[str, AliasSeedSpec] = {}
    seen: dict[str, set[str]] = {}
    for row in rows:
        canonical_key = _text(row.get("canonical_key"))
        target_name = _text(row.get("target_name"))
        alias_text = _text(row.get("alias_text"))
        if not canonical_key or not target_name or not alias_text:
            continue
        if _text(row.get("active")).lower() in INACTIVE_VALUES:
            continue

        spec = specs.get(canonical_key)
        if spec is None:
            spec = AliasSeedSpec(
                canonical_key=canonical_key,
                target_name=target_name,
                target_norm=normalize_search_text(target_name),
            )
            specs[canonical_key] = spec
            seen[canonical_key] = set()

        alias_norm = normalize_search_text(alias_text)
        dedupe_key = alias_norm or alias_text
        if dedupe_key in seen[canonical_key]:
            continue
        seen[canonical_key].add(dedupe_key)
        spec.aliases.append(
            SeedAlias(alias_text=alias_text, alias_norm=alias_norm, weight=_weight(row.get("weight")))
        )

    return [specs[key] for key in sorted(specs)]


def load_seed_specs(csv_path: Path) -> list[AliasSeedSpec]:
    """Read alias seed specs from a CSV file.

    Columns: canonical_key, target_name, alias_text, weight and an optional
    active flag (rows with a false-like value are ignored).

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If required columns are missing.
    """
    csv_path = Path(csv_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Alias seed file not found: {csv_path}")

    with open(csv_path, encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        header = [name.strip() for name in reader.fieldnames or []]
        missing = [col for col in SEED_COLUMNS if col not in header]
        if missing:
            raise ValueError(f"{csv_path.name} missing columns: {', '.join(missing)}")
        reader.fieldnames = header
        rows = list(reader)

    specs = group_seed_rows(rows)
    logger.info(f"Loaded {len(specs)} alias seed specs from {csv_path.name}")
    return specs


def _name_key(name: str) -> str:
    return remove_accents(name).casefold()


def _representative_key(stop: dict[str, str]) -> tuple[Any, ...]:
    return (
        not is_parent_like(stop["stop_id"], stop["parent_station"], stop["location_type"]),
        not stop["stop_id"].startswith("Parent"),
        _name_key(stop["stop_name"]),
        stop["stop_id"],
    )


def select_target_candidates(
    stops_by_group: dict[str, list[dict[str, str]]], target_norm: str
) -> list[dict[str, str]]:
    """One representative per station group holding a stop named like the target."""
    matches = []
    for members in stops_by_group.values():
        matching = [stop for stop in members if normalize_search_text(stop["stop_name"]) == target_norm]
        if not matching:
            continue
        matches.append(min(matching, key=_representative_key))
    return sorted(matches, key=_representative_key)


def select_previous_stop_id(previous_ids: set[str], stops_by_id: dict[str, dict[str, str]]) -> str:
    """The previous target of a key, if exactly one still exists and is parent-like."""
    valid = [
        stops_by_id[stop_id]
        for stop_id in sorted(previous_ids)
        if stop_id in stops_by_id
        and is_parent_like(
            stop_id, stops_by_id[stop_id]["parent_station"], stops_by_id[stop_id]["location_type"]
        )
    ]
    if len(valid) != 1:
        return ""
    return valid[0]["stop_id"]


async def _load_stops(
    db: aiosqlite.Connection,
) -> tuple[dict[str, dict[str, str]], dict[str, list[dict[str, str]]]]:
    stops_by_id: dict[str, dict[str, str]] = {}
    stops_by_group: dict[str, list[dict[str, str]]] = {}
    async with db.execute(
        "SELECT stop_id, stop_name, parent_station, location_type FROM stops"
    ) as cursor:
        async for row in cursor:
            stop_id = _text(row[0])
            if not stop_id:
                continue
            stop = {
                "stop_id": stop_id,
                "stop_name": _text(row[1]),
                "parent_station": _text(row[2]),
                "location_type": _text(row[3]).removesuffix(".0"),
            }
            stops_by_id[stop_id] = stop
            stops_by_group.setdefault(stop["parent_station"] or stop_id, []).append(stop)
    return stops_by_id, stops_by_group


async def _load_previous_targets(db: aiosqlite.Connection) -> dict[str, set[str]]:
    targets: dict[str, set[str]] = {}
    async with db.execute(
        "SELECT canonical_key, stop_id FROM stop_aliases WHERE COALESCE(canonical_key, '') <> ''"
    ) as cursor:
        async for row in cursor:
            key, stop_id = _text(row[0]), _text(row[1])
            if key and stop_id:
                targets.setdefault(key, set()).add(stop_id)
    return targets


async def upsert_aliases(db: aiosqlite.Connection, spec: AliasSeedSpec, stop_id: str) -> None:
    """Point every alias of spec at stop_id and drop the key's stale seed aliases."""
    alias_texts = [alias.alias_text for alias in spec.aliases]
    placeholders = ",".join(["?"] * len(alias_texts))
    await db.execute(
        f"""
        DELETE FROM stop_aliases
        WHERE canonical_key = ? AND source = ? AND alias_text NOT IN ({placeholders})
        """,
        (spec.canonical_key, SEED_SOURCE, *alias_texts),
    )

    updated_at = datetime.now(UTC).isoformat()
    await db.executemany(
        UPSERT_ALIAS_SQL,
        [
            (alias.alias_text, alias.alias_norm, stop_id, alias.weight, spec.canonical_key, SEED_SOURCE, updated_at)
            for alias in spec.aliases
        ],
    )


async def sync_stop_aliases(db: aiosqlite.Connection, specs: list[AliasSeedSpec]) -> AliasSyncReport:
    """Resolve each seed spec against the gazetteer and upsert its aliases.

    Args:
        db: Connection to the stop database.
        specs: Specs from load_seed_specs / group_seed_rows.

    Returns:
        AliasSyncReport; status is success_with_degraded_search when a spec
        could not be resolved or no specs were given.
    """
    report = AliasSyncReport()
    await ensure_alias_tables(db)

    if not specs:
        report.errors.append(SyncIssue(reason="missing_seed_specs", detail="no active alias seed rows"))

    stops_by_id, stops_by_group = await _load_stops(db)
    previous_targets = await _load_previous_targets(db)

    for spec in specs:
        candidates = select_target_candidates(stops_by_group, spec.target_norm)
        previous_id = select_previous_stop_id(previous_targets.get(spec.canonical_key, set()), stops_by_id)
        candidate_refs = [StopRef(stop_id=c["stop_id"], stop_name=c["stop_name"]) for c in candidates]

        if len(candidates) == 1:
            selected = candidates[0]
            await upsert_aliases(db, spec, selected["stop_id"])
            report.resolved.append(
                ResolvedAlias(
                    canonical_key=spec.canonical_key,
                    target_name=spec.target_name,
                    stop_id=selected["stop_id"],
                    stop_name=selected["stop_name"],
                    aliases_upserted=len(spec.aliases),
                )
            )
        elif previous_id:
            await upsert_aliases(db, spec, previous_id)
            report.kept_previous.append(
                ResolvedAlias(
                    canonical_key=spec.canonical_key,
                    target_name=spec.target_name,
                    stop_id=previous_id,
                    stop_name=stops_by_id[previous_id]["stop_name"],
                    aliases_upserted=len(spec.aliases),
                    reason="ambiguous_resolution" if candidates else "target_not_found_keep_previous",
                    candidates=candidate_refs or None,
                )
            )
        elif candidates:
            logger.warning(f"Alias target {spec.target_name!r} is ambiguous ({len(candidates)} stations)")
            report.skipped_ambiguous.append(
                UnresolvedAlias(
                    canonical_key=spec.canonical_key,
                    target_name=spec.target_name,
                    reason="ambiguous_resolution",
                    candidates=candidate_refs,
                )
            )
        else:
            logger.warning(f"Alias target {spec.target_name!r} not found")
            report.missing_target.append(
                UnresolvedAlias(
                    canonical_key=spec.canonical_key,
                    target_name=spec.target_name,
                    reason="target_not_found",
                )
            )

    await db.commit()
    return report.finalize()
