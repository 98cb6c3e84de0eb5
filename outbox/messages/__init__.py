"""Outgoing message records and their persistence."""
