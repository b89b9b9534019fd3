"""Shared helpers for m365guard."""
