"""
Gateway service: FastAPI application with identity-aware rate limiting.
"""
