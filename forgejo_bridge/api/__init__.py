"""HTTP surface: GitHub-compatible routes and the Git transport middleware."""
