"""Postmortem knowledge graph: AI-drafted postmortems and similar-incident recommendations."""

__version__ = "0.1.0"
