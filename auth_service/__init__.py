"""User registration, login and wallet token funding service."""
