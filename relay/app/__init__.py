"""FastAPI application package for the relay."""
