"""Missed-dose scheduling, verification and adherence reports."""
