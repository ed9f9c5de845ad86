"""
ThreatLink - threat models extracted from security annotations in source code.

Parses ``@asset``/``@threat``/``@exposes``/... comments into a structured
threat model, validates and diffs models, and merges per-repository reports
into one workspace view.
"""

__version__ = "1.0.0"
