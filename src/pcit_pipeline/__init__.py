"""Behavioral coding pipeline for parent-child interaction recordings."""

__version__ = "0.1.0"
