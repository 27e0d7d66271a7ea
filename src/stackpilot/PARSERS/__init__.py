"""Parsers for stack manifests."""
