"""CORS relay with per-client admission control."""
