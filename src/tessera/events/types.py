"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
Each type maps to its own Redis stream: tessera:events:<type>.
"""

# ─── User lifecycle ──────────────────────────────────────

USER_CREATED = "user.created"
USER_LOGGED_IN = "user.logged_in"
USER_LOGGED_OUT = "user.logged_out"

# ─── Authorization changes ───────────────────────────────

ROLE_ASSIGNED = "role.assigned"
ROLE_REMOVED = "role.removed"
ORGANIZATION_ASSIGNED = "organization.assigned"
ORGANIZATION_REMOVED = "organization.removed"

# ─── Session tokens ──────────────────────────────────────

TOKEN_REFRESHED = "token.refreshed"
TOKEN_REUSE_DETECTED = "token.reuse_detected"

EVENT_TYPES = frozenset({
    USER_CREATED,
    USER_LOGGED_IN,
    USER_LOGGED_OUT,
    ROLE_ASSIGNED,
    ROLE_REMOVED,
    ORGANIZATION_ASSIGNED,
    ORGANIZATION_REMOVED,
    TOKEN_REFRESHED,
    TOKEN_REUSE_DETECTED,
})
