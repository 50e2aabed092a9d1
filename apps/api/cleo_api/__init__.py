"""Cleo publishing API."""
