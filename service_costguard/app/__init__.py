"""
Cost Guard Service package.

Sits between client requests and paid upstream APIs, enforcing:
- Caching: TTL cache for computed results, blob cache for place photos
- Rate limiting: fixed-window counters updated in store transactions
- Usage quotas: monthly AI check allowance per user, tier aware
- Request coalescing: single-flight around expensive upstream fetches

Structure:
- app.main: FastAPI app, routes and component wiring.
- app.adapters: document store, blob store and upstream HTTP clients.
- app.caching: TTL cache.
- app.ratelimit: fixed-window rate limiter.
- app.quota: plans and usage tracker.
- app.fetching: single-flight and the photo cache built on it.
- app.domain: scoring flow composed from the above.
"""
