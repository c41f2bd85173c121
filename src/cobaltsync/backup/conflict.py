"""
Conflict resolution for restored entities.

Every restorable domain is reconciled against the local collection under
one ConflictStrategy per restore call:

    skip-existing       existing entities are left untouched; only new
                        entities are inserted
    overwrite-existing  an existing entity is replaced by the incoming
                        record; only the local primary id is kept
    merge               type-specific additive reconciliation: list fields
                        are unioned, numeric plan fields take the max, notes
                        are concatenated and pointer-like fields keep the
                        local value when it is set

All functions here are pure. Inputs are never mutated and the same
(local, incoming, strategy) triple always yields the same result.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from cobaltsync.backup.target_matcher import (
    find_matching_target,
    resolve_target_id,
    resolve_target_name,
)
from cobaltsync.backup.types import (
    BackupAstrometryState,
    BackupFileGroupState,
    ConflictStrategy,
)

Entity = dict[str, Any]
MergeFn = Callable[[Entity, Entity], Entity]
MatchFn = Callable[[Entity, list[Entity]], Entity | None]

NOTES_SEPARATOR = "\n"


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------


def union(*lists: Iterable[Any] | None) -> list[Any]:
    """Order-preserving union of several lists, skipping None."""
    seen: list[Any] = []
    for values in lists:
        for value in values or []:
            if value not in seen:
                seen.append(value)
    return seen


def merge_notes(*notes: str | None) -> str | None:
    """Join non-empty trimmed notes with a newline; None when nothing is left."""
    parts = [note.strip() for note in notes if isinstance(note, str) and note.strip()]
    return NOTES_SEPARATOR.join(parts) if parts else None


def _is_set(value: Any) -> bool:
    return value is not None and value != ""


def _keep_local(local: Entity, incoming: Entity, key: str) -> Any:
    return local[key] if _is_set(local.get(key)) else incoming.get(key)


def _max_per_key(local: dict[str, Any] | None, incoming: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(local or {})
    for key, value in (incoming or {}).items():
        current = merged.get(key)
        merged[key] = value if current is None else max(current, value)
    return merged


def _set_notes(entity: Entity, notes: str | None) -> Entity:
    if notes is None:
        entity.pop("notes", None)
    else:
        entity["notes"] = notes
    return entity


# -----------------------------------------------------------------------------
# Per-domain merge functions
# -----------------------------------------------------------------------------


def merge_file(local: Entity, incoming: Entity) -> Entity:
    """Merge two file records: incoming fields win, tags and album ids union."""
    return {
        **local,
        **incoming,
        "tags": union(local.get("tags"), incoming.get("tags")),
        "albumIds": union(local.get("albumIds"), incoming.get("albumIds")),
    }


def merge_album(local: Entity, incoming: Entity) -> Entity:
    """Merge two albums: image ids union, the local cover image wins when set."""
    merged = {
        **local,
        **incoming,
        "imageIds": union(local.get("imageIds"), incoming.get("imageIds")),
    }
    cover = _keep_local(local, incoming, "coverImageId")
    if cover is None:
        merged.pop("coverImageId", None)
    else:
        merged["coverImageId"] = cover
    return merged


def merge_target(local: Entity, incoming: Entity) -> Entity:
    """
    Merge two target records.

    Aliases, tags, image ids and planned filters union; planned exposure
    takes the per-filter maximum; image ratings overlay; notes concatenate;
    best image and recommended equipment keep the local value when set.
    """
    merged = {
        **local,
        **incoming,
        "id": local.get("id"),
        "aliases": union(local.get("aliases"), incoming.get("aliases")),
        "tags": union(local.get("tags"), incoming.get("tags")),
        "imageIds": union(local.get("imageIds"), incoming.get("imageIds")),
        "plannedFilters": union(local.get("plannedFilters"), incoming.get("plannedFilters")),
        "plannedExposure": _max_per_key(
            local.get("plannedExposure"), incoming.get("plannedExposure")
        ),
        "imageRatings": {**(local.get("imageRatings") or {}), **(incoming.get("imageRatings") or {})},
    }
    for key in ("bestImageId", "recommendedEquipment"):
        value = _keep_local(local, incoming, key)
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return _set_notes(merged, merge_notes(local.get("notes"), incoming.get("notes")))


def merge_target_group(local: Entity, incoming: Entity) -> Entity:
    """Merge two target groups: member target ids union."""
    return {
        **local,
        **incoming,
        "targetIds": union(local.get("targetIds"), incoming.get("targetIds")),
    }


def _target_ref_key(ref: Any) -> Any:
    if isinstance(ref, dict):
        return ref.get("targetId") or str(ref.get("name", "")).strip().lower()
    return ref


def _union_target_refs(left: list[Any] | None, right: list[Any] | None) -> list[Any]:
    seen: set[Any] = set()
    refs: list[Any] = []
    for ref in [*(left or []), *(right or [])]:
        key = _target_ref_key(ref)
        if key in seen:
            continue
        seen.add(key)
        refs.append(ref)
    return refs


def merge_session(local: Entity, incoming: Entity) -> Entity:
    """
    Merge two observation sessions.

    Target names, target refs, image ids and tags union; equipment fields
    overlay with the filter lists unioned; notes concatenate.
    """
    merged = {
        **local,
        **incoming,
        "targets": union(local.get("targets"), incoming.get("targets")),
        "imageIds": union(local.get("imageIds"), incoming.get("imageIds")),
    }
    if "tags" in local or "tags" in incoming:
        merged["tags"] = union(local.get("tags"), incoming.get("tags"))
    if "targetRefs" in local or "targetRefs" in incoming:
        merged["targetRefs"] = _union_target_refs(local.get("targetRefs"), incoming.get("targetRefs"))

    local_eq = local.get("equipment")
    incoming_eq = incoming.get("equipment")
    if local_eq is not None or incoming_eq is not None:
        equipment = {**(local_eq or {}), **(incoming_eq or {})}
        filters = union((local_eq or {}).get("filters"), (incoming_eq or {}).get("filters"))
        if filters:
            equipment["filters"] = filters
        merged["equipment"] = equipment

    return _set_notes(merged, merge_notes(local.get("notes"), incoming.get("notes")))


def merge_plan(local: Entity, incoming: Entity) -> Entity:
    """Merge two plans: the local target link wins, notes concatenate."""
    merged = {
        **local,
        **incoming,
        "targetId": _keep_local(local, incoming, "targetId"),
        "targetName": incoming.get("targetName") or local.get("targetName") or "",
    }
    if merged["targetId"] is None:
        merged.pop("targetId")
    return _set_notes(merged, merge_notes(local.get("notes"), incoming.get("notes")))


def merge_log_entry(local: Entity, incoming: Entity) -> Entity:
    """Merge two log entries: incoming fields win, notes concatenate."""
    return _set_notes({**local, **incoming}, merge_notes(local.get("notes"), incoming.get("notes")))


def merge_overlay(local: Entity, incoming: Entity) -> Entity:
    """Merge records that have no list fields: incoming fields win."""
    return {**local, **incoming}


def merge_file_group(local: Entity, incoming: Entity) -> Entity:
    merged = {**local, **incoming}
    if "fileIds" in local or "fileIds" in incoming:
        merged["fileIds"] = union(local.get("fileIds"), incoming.get("fileIds"))
    return merged


merge_astrometry_job = merge_overlay
merge_trash_record = merge_overlay


# -----------------------------------------------------------------------------
# Reconciliation
# -----------------------------------------------------------------------------


def resolve_entity(
    local: Entity,
    incoming: Entity,
    strategy: ConflictStrategy | str | None,
    merge_fn: MergeFn,
    id_key: str = "id",
) -> Entity:
    """
    Decide the stored value for one existing entity.

    Args:
        local: The existing local record.
        incoming: The record from the backup.
        strategy: Conflict strategy.
        merge_fn: Domain merge function used for the merge strategy.
        id_key: Primary id field.

    Returns:
        The local record itself for skip-existing, otherwise a new dict
        carrying the local primary id.
    """
    mode = ConflictStrategy.parse(strategy)
    if mode is ConflictStrategy.SKIP_EXISTING:
        return local
    if mode is ConflictStrategy.OVERWRITE_EXISTING:
        return {**incoming, id_key: local.get(id_key)}
    merged = merge_fn(local, incoming)
    merged[id_key] = local.get(id_key)
    return merged


@dataclass
class ReconcileResult:
    """Outcome of reconciling one domain collection."""

    items: list[Entity]
    inserted: list[Any] = field(default_factory=list)
    updated: list[Any] = field(default_factory=list)
    skipped: list[Any] = field(default_factory=list)


def reconcile(
    local_items: Iterable[Entity],
    incoming_items: Iterable[Entity],
    strategy: ConflictStrategy | str | None,
    merge_fn: MergeFn,
    *,
    match: MatchFn | None = None,
    id_key: str = "id",
) -> ReconcileResult:
    """
    Reconcile an incoming collection against a local one.

    Local order is kept and new entities are appended in incoming order.
    Later incoming entities see the effect of earlier ones, so two incoming
    records resolving to the same local entity are applied in turn.

    Args:
        local_items: Existing local records.
        incoming_items: Records from the backup.
        strategy: Conflict strategy for the whole collection.
        merge_fn: Domain merge function.
        match: Optional identity resolver (defaults to id equality).
        id_key: Primary id field.

    Returns:
        ReconcileResult with the final collection and per-id outcomes.
    """
    mode = ConflictStrategy.parse(strategy)
    items = list(local_items)
    positions = {item.get(id_key): index for index, item in enumerate(items)}
    result = ReconcileResult(items=items)

    for incoming in incoming_items:
        if not isinstance(incoming, dict):
            continue

        if match is not None:
            existing = match(incoming, items)
            index = positions.get(existing.get(id_key)) if existing is not None else None
        else:
            index = positions.get(incoming.get(id_key))

        if index is None:
            positions[incoming.get(id_key)] = len(items)
            items.append(dict(incoming))
            result.inserted.append(incoming.get(id_key))
            continue

        existing = items[index]
        if mode is ConflictStrategy.SKIP_EXISTING:
            result.skipped.append(existing.get(id_key))
            continue

        items[index] = resolve_entity(existing, incoming, mode, merge_fn, id_key)
        result.updated.append(existing.get(id_key))

    return result


def reconcile_files(local, incoming, strategy) -> ReconcileResult:
    return reconcile(local, incoming, strategy, merge_file)


def reconcile_albums(local, incoming, strategy) -> ReconcileResult:
    return reconcile(local, incoming, strategy, merge_album)


def reconcile_targets(local, incoming, strategy) -> ReconcileResult:
    """Reconcile targets, matching by id, then by name or alias."""
    return reconcile(local, incoming, strategy, merge_target, match=find_matching_target)


def reconcile_target_groups(local, incoming, strategy) -> ReconcileResult:
    deduped = [
        {**group, "targetIds": union(group.get("targetIds"))} if "targetIds" in group else group
        for group in incoming
        if isinstance(group, dict)
    ]
    return reconcile(local, deduped, strategy, merge_target_group)


def reconcile_sessions(local, incoming, strategy) -> ReconcileResult:
    return reconcile(local, incoming, strategy, merge_session)


def reconcile_plans(
    local: list[Entity],
    incoming: list[Entity],
    strategy: ConflictStrategy | str | None,
    targets: list[Entity] | None = None,
) -> ReconcileResult:
    """Reconcile plans after resolving each plan's target against the catalog."""
    catalog = targets or []
    normalized = []
    for plan in incoming:
        if not isinstance(plan, dict):
            continue
        target_id = resolve_target_id(plan.get("targetId"), plan.get("targetName"), catalog)
        plan = {
            **plan,
            "targetName": resolve_target_name(target_id, plan.get("targetName"), catalog),
        }
        if target_id is not None:
            plan["targetId"] = target_id
        normalized.append(plan)
    return reconcile(local, normalized, strategy, merge_plan)


def reconcile_log_entries(local, incoming, strategy) -> ReconcileResult:
    return reconcile(local, incoming, strategy, merge_log_entry)


def reconcile_astrometry_jobs(local, incoming, strategy) -> ReconcileResult:
    return reconcile(local, incoming, strategy, merge_astrometry_job)


def reconcile_trash(local, incoming, strategy) -> ReconcileResult:
    return reconcile(local, incoming, strategy, merge_trash_record)


def reconcile_file_groups(
    local: BackupFileGroupState,
    incoming: BackupFileGroupState,
    strategy: ConflictStrategy | str | None,
) -> BackupFileGroupState:
    """
    Reconcile file groups and the file -> group membership map.

    Membership follows the same strategy per file id: new files are added,
    skip keeps the local list, overwrite takes the incoming list and merge
    unions the two.
    """
    mode = ConflictStrategy.parse(strategy)
    groups = reconcile(local.groups, incoming.groups, mode, merge_file_group).items

    membership = {file_id: list(ids) for file_id, ids in local.file_group_map.items()}
    for file_id, group_ids in incoming.file_group_map.items():
        if file_id not in membership:
            membership[file_id] = list(group_ids)
        elif mode is ConflictStrategy.OVERWRITE_EXISTING:
            membership[file_id] = list(group_ids)
        elif mode is ConflictStrategy.MERGE:
            membership[file_id] = union(membership[file_id], group_ids)

    return BackupFileGroupState(groups=groups, file_group_map=membership)


def reconcile_astrometry_config(
    local: dict[str, Any] | None,
    incoming: dict[str, Any] | None,
    strategy: ConflictStrategy | str | None,
) -> dict[str, Any]:
    """
    Reconcile the plate-solving configuration.

    Skip keeps the local config when one exists, overwrite takes the
    incoming config and merge keeps every local value that is set.
    """
    mode = ConflictStrategy.parse(strategy)
    if not local:
        return dict(incoming or {})
    if not incoming or mode is ConflictStrategy.SKIP_EXISTING:
        return dict(local)
    if mode is ConflictStrategy.OVERWRITE_EXISTING:
        return dict(incoming)
    return {**incoming, **{key: value for key, value in local.items() if _is_set(value)}}


def reconcile_astrometry(
    local: BackupAstrometryState,
    incoming: BackupAstrometryState,
    strategy: ConflictStrategy | str | None,
) -> BackupAstrometryState:
    return BackupAstrometryState(
        config=reconcile_astrometry_config(local.config, incoming.config, strategy),
        jobs=reconcile_astrometry_jobs(local.jobs, incoming.jobs, strategy).items,
    )


def reconcile_active_session(
    local: Entity | None,
    incoming: Entity | None,
    strategy: ConflictStrategy | str | None,
) -> Entity | None:
    """
    Reconcile the single running session.

    At most one session is active. Without a local session the incoming
    one is adopted. Merge combines the two only when they are the same
    session; otherwise the local one is kept.
    """
    mode = ConflictStrategy.parse(strategy)
    if incoming is None:
        return local
    if local is None:
        return dict(incoming)
    if mode is ConflictStrategy.SKIP_EXISTING:
        return local
    if mode is ConflictStrategy.OVERWRITE_EXISTING:
        return dict(incoming)
    if local.get("id") != incoming.get("id"):
        return local
    notes = []
    seen = set()
    for note in [*(local.get("notes") or []), *(incoming.get("notes") or [])]:
        key = (note.get("timestamp"), note.get("text")) if isinstance(note, dict) else note
        if key in seen:
            continue
        seen.add(key)
        notes.append(note)
    return {**local, **incoming, "notes": notes}


def apply_settings_patch(local: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Apply restored settings as a patch; keys absent from the patch are kept."""
    return {**local, **{key: value for key, value in patch.items() if value is not None}}
