"""Tessera — identity and access control backend.

Google OAuth login, rotating JWT sessions with refresh-token theft
detection, flat role-based access control over users, roles and
organizations, and at-least-once domain events for downstream consumers.
"""

__version__ = "0.1.0"
