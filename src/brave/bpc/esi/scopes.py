# ESI scopes and the scopes each privileged operation needs.
#
# The table is static: adding an operation means adding an entry here and
# asking members to re-authorize so their tokens carry the new scopes.

from typing import Dict, FrozenSet

ASSETS_READ_CORPORATION_ASSETS = "esi-assets.read_corporation_assets.v1"
CORPORATIONS_READ_BLUEPRINTS = "esi-corporations.read_blueprints.v1"
CORPORATIONS_READ_DIVISIONS = "esi-corporations.read_divisions.v1"
INDUSTRY_READ_CORPORATION_JOBS = "esi-industry.read_corporation_jobs.v1"
UNIVERSE_READ_STRUCTURES = "esi-universe.read_structures.v1"

LOGIN_SCOPES: FrozenSet[str] = frozenset(
    {
        ASSETS_READ_CORPORATION_ASSETS,
        CORPORATIONS_READ_BLUEPRINTS,
        CORPORATIONS_READ_DIVISIONS,
        INDUSTRY_READ_CORPORATION_JOBS,
        UNIVERSE_READ_STRUCTURES,
    }
)
"""Scopes requested when a member links a character."""

OPERATION_SCOPES: Dict[str, FrozenSet[str]] = {
    "blueprints.reconcile": frozenset({CORPORATIONS_READ_BLUEPRINTS}),
    "industry.jobs": frozenset({INDUSTRY_READ_CORPORATION_JOBS}),
    "assets.locations": frozenset(
        {
            ASSETS_READ_CORPORATION_ASSETS,
            CORPORATIONS_READ_DIVISIONS,
            UNIVERSE_READ_STRUCTURES,
        }
    ),
    "corporation.admin": LOGIN_SCOPES,
}


def required_scopes(operation: str) -> FrozenSet[str]:
    try:
        return OPERATION_SCOPES[operation]
    except KeyError:
        raise ValueError(f"Unknown operation: {operation}") from None
