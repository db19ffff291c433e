"""Clinic SEO Audit: technical audit engine for multi-clinic SEO platforms."""

__version__ = "1.0.0"
