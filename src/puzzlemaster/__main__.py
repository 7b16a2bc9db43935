"""Module entrypoint for ``python -m puzzlemaster``."""

from __future__ import annotations

from puzzlemaster.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
