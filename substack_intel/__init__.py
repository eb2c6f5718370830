"""
Substack Intelligence pipeline.

Ingests newsletter emails, extracts company mentions with an LLM and
keeps a deduplicated company table with mention provenance.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
