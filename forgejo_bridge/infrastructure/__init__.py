"""Infrastructure layer for Forgejo Bridge."""
