"""Module entrypoint for ``python -m case_forge``."""

from __future__ import annotations

from case_forge.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
