"""Reorg-safe event ingestion and price-history engine for a token launchpad."""

__version__ = "0.1.0"
