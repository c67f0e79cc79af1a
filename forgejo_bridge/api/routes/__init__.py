"""GitHub-compatible routes."""
