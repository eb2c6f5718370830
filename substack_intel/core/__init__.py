"""Core configuration, logging, exceptions and domain models."""
