"""Outbound media message delivery."""
