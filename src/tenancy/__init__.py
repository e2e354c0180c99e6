"""
Tenancy - Tenant Isolation
Continuation-scoped tenant context, tenant query filters and per-tenant jobs
"""
