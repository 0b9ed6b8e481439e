"""
Task Manager state layer package.

Sits between the stateless HTTP handlers and the two stores (the
relational database and Redis). It provides:

- app.keystore: Async Redis wrapper with an explicit failure contract.
- app.caching: Tenant-scoped key namespace, entity cache and token cache.
- app.ratelimit: Tiered fixed-window quotas with burst allowance.
- app.state: Explicit wiring of the components above.
- app.main: FastAPI app exposing health, metrics and the 429 contract.

Guidelines:
- The database owns canonical data; everything cached is expendable.
- Invalidate after the database write commits, never before.
- A cache or rate limit failure must never fail the request.
"""
