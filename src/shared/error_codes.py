# src/shared/error_codes.py
# Central mapping that aligns with the error contract.
# Keep keys stable: API clients rely on these.
ERROR_CODES = {
    # ─── Validation & Requests ──────────────────────────────────────────────
    "validation_error": {
        "http": 400,
        "message": "Validation failed for one or more fields."
    },

    # ─── Authentication & Authorization ────────────────────────────────────
    "unauthorized": {
        "http": 401,
        "message": "Unauthorized. Please provide valid credentials."
    },
    "forbidden": {
        "http": 403,
        "message": "You are not allowed to perform this action."
    },

    # ─── Lookups ───────────────────────────────────────────────────────────
    "not_found": {
        "http": 404,
        "message": "Resource not found."
    },

    # ─── Tenant ────────────────────────────────────────────────────────────
    "tenant_context_missing": {
        "http": 401,
        "message": "Tenant context is missing. Please sign in."
    },
    "tenant_not_found": {
        "http": 404,
        "message": "Tenant not found."
    },
    "tenant_disabled": {
        "http": 403,
        "message": "Tenant is disabled. Please contact the administrator."
    },
    "tenant_expired": {
        "http": 403,
        "message": "Tenant subscription has expired."
    },
    "tenant_quota_exceeded": {
        "http": 403,
        "message": "Tenant quota exceeded."
    },
    "tenant_feature_disabled": {
        "http": 403,
        "message": "Feature is not enabled for this tenant."
    },
    "cross_tenant_access": {
        "http": 403,
        "message": "Access to another tenant's data is not allowed."
    },

    # ─── Concurrency & Conflicts ───────────────────────────────────────────
    "conflict": {
        "http": 409,
        "message": "Conflict with existing resource."
    },
    "lock_conflict": {
        "http": 409,
        "message": "Operation in progress, please retry later."
    },
    "version_conflict": {
        "http": 409,
        "message": "Data was modified by another user, please refresh and retry."
    },
    "duplicate_request": {
        "http": 429,
        "message": "Duplicate request in flight, please do not resubmit."
    },

    # ─── Infrastructure ────────────────────────────────────────────────────
    "coordination_unavailable": {
        "http": 503,
        "message": "Coordination store unavailable. Please try again later."
    },

    # ─── Internal ──────────────────────────────────────────────────────────
    "internal_error": {
        "http": 500,
        "message": "An unexpected error occurred. Please try again later."
    },
}
