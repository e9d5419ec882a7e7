"""Petrel services."""
