"""Authentication — JWT access tokens for API calls and event streams."""
