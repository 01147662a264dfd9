"""
Rate limiting package for the Gateway.

Holds the fixed-window counter store, the limiter that turns caller
identities into decisions, and the middleware that enforces them.
"""
