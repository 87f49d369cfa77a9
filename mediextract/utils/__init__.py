"""JSON repair and deterministic validation."""
