"""Build run context."""
