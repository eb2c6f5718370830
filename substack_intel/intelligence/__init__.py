"""
Content normalization and company extraction.

Turns raw newsletter emails into clean text and asks an LLM for the
companies discussed in them.
"""

from .extractor import CompanyExtractor
from .html_parser import ContentNormalizer

__all__ = ["CompanyExtractor", "ContentNormalizer"]
