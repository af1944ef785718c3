"""Companion registry package: identity, personality and interaction stats."""
