"""
case-forge — package root

File: src/case_forge/__init__.py
Last updated: 2026-10-17

Purpose
- Package root for the case generation pipeline: LLM output is extracted,
  repaired, validated against declarative thresholds, repaired once through the
  generator, and committed atomically together with its asset files.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).

Non-functional requirements
- Keep import time small; heavy submodules (provider SDKs, jinja2) load lazily.
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]
