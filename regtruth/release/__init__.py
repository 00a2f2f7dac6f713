"""Versioned releases of published rules and their rollback."""
