"""Cleo shared library: settings, persistence, platform client and publishing core."""
