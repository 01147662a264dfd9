"""
API Gateway service package.

The gateway fronts client requests and enforces a per-identity request budget
before any handler runs.

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.auth: Signed identity tokens and caller identity resolution.
- app.ratelimit: Counter store, rate limiter and middleware.
"""
