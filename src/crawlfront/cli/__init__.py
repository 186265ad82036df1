"""Command line interface for crawlfront."""
