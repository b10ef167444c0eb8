"""Authentication and authorization.

Learn: Two tiers of credentials:
1. Users → Google OAuth code → opaque refresh token + short-lived JWT
2. Every request → Bearer JWT, verified without touching the store

The JWT resolves to a "current identity" that route dependencies gate on.
"""
