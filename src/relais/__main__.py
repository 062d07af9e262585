"""Module entrypoint for ``python -m relais``."""

from __future__ import annotations

from relais.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
