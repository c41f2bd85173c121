"""
Target name and alias matching.

Independently named backups often describe the same object under different
names ("M31", "m 31", "Andromeda Galaxy", "NGC 224"). Restore resolves an
incoming target against the local catalog through these rules before it
falls back to inserting a new record.
"""

from __future__ import annotations

import re
from typing import Any

# Well-known alias sets, keyed by the canonical catalog designation.
COMMON_ALIASES: dict[str, list[str]] = {
    # Messier
    "M1": ["Crab Nebula", "NGC 1952"],
    "M8": ["Lagoon Nebula", "NGC 6523"],
    "M13": ["Hercules Cluster", "NGC 6205"],
    "M16": ["Eagle Nebula", "NGC 6611"],
    "M17": ["Omega Nebula", "Swan Nebula", "NGC 6618"],
    "M20": ["Trifid Nebula", "NGC 6514"],
    "M27": ["Dumbbell Nebula", "NGC 6853"],
    "M31": ["Andromeda Galaxy", "NGC 224"],
    "M33": ["Triangulum Galaxy", "NGC 598"],
    "M42": ["Orion Nebula", "NGC 1976"],
    "M43": ["De Mairan's Nebula", "NGC 1982"],
    "M44": ["Beehive Cluster", "Praesepe", "NGC 2632"],
    "M45": ["Pleiades", "Seven Sisters"],
    "M51": ["Whirlpool Galaxy", "NGC 5194"],
    "M57": ["Ring Nebula", "NGC 6720"],
    "M63": ["Sunflower Galaxy", "NGC 5055"],
    "M64": ["Black Eye Galaxy", "NGC 4826"],
    "M74": ["Phantom Galaxy", "NGC 628"],
    "M76": ["Little Dumbbell Nebula", "NGC 650"],
    "M78": ["NGC 2068"],
    "M81": ["Bode's Galaxy", "NGC 3031"],
    "M82": ["Cigar Galaxy", "NGC 3034"],
    "M83": ["Southern Pinwheel Galaxy", "NGC 5236"],
    "M97": ["Owl Nebula", "NGC 3587"],
    "M101": ["Pinwheel Galaxy", "NGC 5457"],
    "M104": ["Sombrero Galaxy", "NGC 4594"],
    "M106": ["NGC 4258"],
    "M110": ["NGC 205"],
    # NGC
    "NGC 7000": ["North America Nebula"],
    "NGC 7293": ["Helix Nebula"],
    "NGC 2237": ["Rosette Nebula"],
    "NGC 6960": ["Western Veil Nebula", "Witch's Broom"],
    "NGC 6992": ["Eastern Veil Nebula"],
    "NGC 7635": ["Bubble Nebula"],
    "NGC 2024": ["Flame Nebula"],
    "NGC 2264": ["Cone Nebula", "Christmas Tree Cluster"],
    "NGC 1499": ["California Nebula"],
    "NGC 891": ["Silver Sliver Galaxy"],
    "NGC 2392": ["Eskimo Nebula", "Clown-faced Nebula"],
    "NGC 3628": ["Hamburger Galaxy"],
    "NGC 4565": ["Needle Galaxy"],
    "NGC 6946": ["Fireworks Galaxy"],
    "NGC 7331": ["Deer Lick Galaxy"],
    "NGC 869": ["Double Cluster", "NGC 884"],
    "NGC 457": ["Owl Cluster", "ET Cluster"],
    # IC
    "IC 1396": ["Elephant Trunk Nebula"],
    "IC 5070": ["Pelican Nebula"],
    "IC 1805": ["Heart Nebula"],
    "IC 1848": ["Soul Nebula", "Embryo Nebula"],
    "IC 434": ["Horsehead Nebula", "B33"],
    "IC 5146": ["Cocoon Nebula"],
    "IC 2118": ["Witch Head Nebula"],
    "IC 1318": ["Butterfly Nebula", "Sadr Region"],
    "IC 342": ["Hidden Galaxy"],
    # Sharpless
    "SH2-129": ["Flying Bat Nebula"],
    "SH2-155": ["Cave Nebula"],
    "SH2-171": ["NGC 7822"],
    "SH2-240": ["Simeis 147", "Spaghetti Nebula"],
    "SH2-308": ["Dolphin Head Nebula"],
    "SH2-132": ["Lion Nebula"],
    "SH2-115": ["Sharpless 115"],
    "SH2-157": ["Lobster Claw Nebula"],
    "SH2-170": ["Little Rosette Nebula"],
}

_WHITESPACE_RE = re.compile(r"\s+")
_CATALOG_RE = re.compile(r"^(M|NGC|IC)\s*(\d+)", re.IGNORECASE)


def normalize_name(name: str) -> str:
    """
    Canonicalize a target name.

    Trims, collapses whitespace and rewrites catalog prefixes so that
    "m31", "M 31" and "m  31" all become "M 31".
    """
    collapsed = _WHITESPACE_RE.sub(" ", name.strip())
    return _CATALOG_RE.sub(lambda m: f"{m.group(1).upper()} {m.group(2)}", collapsed)


def _key(name: str) -> str:
    return normalize_name(name).lower()


def _target_names(target: dict[str, Any]) -> list[str]:
    return [str(target.get("name") or "")] + [str(a) for a in target.get("aliases") or []]


def find_known_aliases(name: str) -> list[str]:
    """Return the other well-known names of an object, or an empty list."""
    normalized = normalize_name(name).upper()
    for key, aliases in COMMON_ALIASES.items():
        all_names = [key, *aliases]
        if any(normalize_name(n).upper() == normalized for n in all_names):
            return [n for n in all_names if normalize_name(n).upper() != normalized]
    return []


def match_target_by_name(name: str, targets: list[dict[str, Any]]) -> dict[str, Any] | None:
    """
    Find the target a name refers to.

    Tries a direct match against each target's name and aliases, then a
    match through the well-known alias catalog.
    """
    wanted = _key(name)
    for target in targets:
        if any(_key(candidate) == wanted for candidate in _target_names(target)):
            return target

    for alias in find_known_aliases(name):
        alias_key = _key(alias)
        for target in targets:
            if any(_key(candidate) == alias_key for candidate in _target_names(target)):
                return target

    return None


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def find_matching_target(
    incoming: dict[str, Any],
    targets: list[dict[str, Any]],
) -> dict[str, Any] | None:
    """
    Resolve an incoming target against the local catalog.

    Matches by id first, then by name or any alias, then by normalized
    overlap of the two name sets.

    Args:
        incoming: Target record from the backup.
        targets: Local target records.

    Returns:
        The matching local target, or None.
    """
    incoming_id = incoming.get("id")
    if incoming_id is not None:
        for target in targets:
            if target.get("id") == incoming_id:
                return target

    candidates = _unique(
        [value.strip() for value in _target_names(incoming) if value and value.strip()]
    )
    if not candidates:
        return None

    for candidate in candidates:
        matched = match_target_by_name(candidate, targets)
        if matched is not None:
            return matched

    wanted = {_key(value) for value in candidates}
    for target in targets:
        if any(_key(value) in wanted for value in _target_names(target) if value):
            return target

    return None


def resolve_target_id(
    target_id: str | None,
    name: str | None,
    targets: list[dict[str, Any]],
) -> str | None:
    """Resolve a plan's target reference to a local target id."""
    if target_id and any(t.get("id") == target_id for t in targets):
        return target_id
    if name:
        matched = match_target_by_name(name, targets)
        if matched is not None:
            return matched.get("id")
    return target_id


def resolve_target_name(
    target_id: str | None,
    name: str | None,
    targets: list[dict[str, Any]],
) -> str:
    """Resolve the display name for a plan's target reference."""
    if target_id:
        for target in targets:
            if target.get("id") == target_id and target.get("name"):
                return str(target["name"])
    return name or ""
