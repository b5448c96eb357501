"""
presence.domain — Canonical data models and enumerations.

Nothing in here should import from other presence sub-packages
(only stdlib).
"""
