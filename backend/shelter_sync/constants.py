"""API route configuration."""

# Base prefix for all API routes
API_PREFIX = "/api"

# Router prefixes (relative to API_PREFIX)
SYNC_PREFIX = "/sync"

# Paths a node calls on its peer (relative to the peer's base URL)
RECEIVE_PATH = f"{API_PREFIX}{SYNC_PREFIX}/receive"
PULL_PATH = f"{API_PREFIX}{SYNC_PREFIX}/pull"
PULL_MEDIA_PATH = f"{API_PREFIX}{SYNC_PREFIX}/pull/media"
MEDIA_RECEIVE_PATH = f"{API_PREFIX}{SYNC_PREFIX}/media/receive"

# Paths the client coordinator calls on its own node
EXECUTE_PATH = f"{API_PREFIX}{SYNC_PREFIX}/execute"
PULL_EXECUTE_PATH = f"{API_PREFIX}{SYNC_PREFIX}/pull/execute"
MEDIA_SYNC_PATH = f"{API_PREFIX}{SYNC_PREFIX}/media"

# Scope key used by the pull cursor when no shelter is given
ALL_SHELTERS_SCOPE = "all"


def pull_scope_key(shelter_id: int | None) -> str:
    """Return the cursor scope key for a pull restricted to *shelter_id*."""
    return ALL_SHELTERS_SCOPE if shelter_id is None else f"shelter:{shelter_id}"
