"""Authentication demo: identity-provider clients wired into a FastAPI app."""
