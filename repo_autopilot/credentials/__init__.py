"""GitHub App installation credentials."""
