"""Domain models and enums for arbor API."""
