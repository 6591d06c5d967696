"""
Entitlements Service package for the Learnpath Access Layer.

This package decides which features a user may use and why. It provides:

- app.main: API surface for entitlement, gate, alumni and settings checks.
- app.sources: One provider per access source (subscription, program plan,
  add-on, track, organisation sponsorship).
- app.rules: Snapshot aggregation, priority resolution, loss preview and
  plan tier helpers.
- app.alumni: Grace-period access after an enrollment ends and deadline
  countdowns before it does.
- app.gate: Feature/capability gate decisions and navigation visibility.
- app.settings: Cached system settings with hardcoded fallbacks.
- app.audit: Background audit log writes.
- app.cache: Redis-backed snapshot cache.
- app.persistence: Query interface with PostgreSQL and in-memory backends.

Guidelines:
- The service is stateless; rely on external cache/DB.
- A failing access source degrades the answer, it never fails the request.
- Keep resolution deterministic and observable (metrics + logs).
"""
