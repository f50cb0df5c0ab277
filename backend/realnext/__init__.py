"""
RealNext authorization and entitlement core.

Resolves tenant principals and their effective permissions, gates actions,
runs the subscription lifecycle, meters per-feature usage and issues
billing documents for the multi-tenant CRM backend.
"""
