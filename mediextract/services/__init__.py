"""Gemini boundary, agent stages, orchestration, history and export."""
