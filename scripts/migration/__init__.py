"""Auth0 to WorkOS user migration toolkit.

Streams exported Auth0 users into WorkOS under per-tenant rate limits,
replays the resulting id mapping back into Auth0, and resolves local
accounts that share an email against the live Auth0 tenant.
"""
