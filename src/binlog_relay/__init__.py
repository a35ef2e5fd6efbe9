"""Relay MySQL binlog row changes to a bus and on to filtered HTTP consumers."""

from .cdc.events import ChangeEvent


def main() -> int:
    """Entrypoint proxy that defers importing the CLI until needed."""

    from .__main__ import main as _cli_main

    return _cli_main()


__all__ = ["ChangeEvent", "main"]
