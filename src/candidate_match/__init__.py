"""Candidate Match: batch matching of project requests against consultants."""

__version__ = "0.1.0"
