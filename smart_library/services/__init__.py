"""Smart Library - Services Package

This package contains service modules for external integrations:
- Hugging Face AI summary service
- Google Books catalog seeding
- HTTP client abstraction
"""
