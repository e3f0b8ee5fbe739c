"""Storefront checkout and payment settlement API."""

__version__ = "1.0.0"
