"""
Access control for a multi-tenant ticketing platform.

Decides whether an authenticated subject may perform an organization,
project or system scoped operation, with short-lived cached role lookups
and mutation-side invalidation.
"""

__version__ = '1.0.0'
