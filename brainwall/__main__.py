"""Single entrypoint: run the autonomous solver (`python -m brainwall`)."""

from __future__ import annotations

from brainwall.cli.autonomous import main as cli_main


def main() -> int:
    return int(cli_main())


if __name__ == "__main__":
    raise SystemExit(main())
