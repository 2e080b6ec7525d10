"""Local agent backends used for demos and integration tests."""
