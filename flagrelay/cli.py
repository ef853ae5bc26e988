"""Command line entry point of the flag daemon."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from importlib import metadata
from pathlib import Path
from typing import Any, Sequence

import yaml

VERSION = "dev"
COMMIT = "HEAD"
DATE = "unknown"

_ENV_PREFIX = "FLAGD_"
_CONFIG_NAME = ".agent"
_CONFIG_EXTENSIONS = (".yaml", ".yml", ".json", "")
_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}

_BANNER = "\033[91m  flagd\033[0m\n"

_DESCRIPTION = (
    "Flagd is a simple command line tool for fetching and presenting feature flags to services. "
    "It is designed to conform to Open Feature schema for flag definitions."
)


def version_line(version: str, commit: str, date: str) -> str:
    """The line printed by the version command."""
    return f"flagd: {version} ({commit}), built at: {date}"


def _find_default_config() -> Path | None:
    home = Path(os.path.expanduser("~"))
    for ext in _CONFIG_EXTENSIONS:
        candidate = home / f"{_CONFIG_NAME}{ext}"
        if candidate.is_file():
            return candidate
    return None


def load_settings(config_file: str | None) -> dict[str, Any]:
    """Read the configuration file, or ``~/.agent.yaml`` when none is given.

    A missing or unreadable file yields an empty mapping.
    """
    path = Path(config_file) if config_file else _find_default_config()
    if path is None:
        return {}
    try:
        with path.open(encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    print("using config file:", path, file=sys.stderr)
    return dict(data) if isinstance(data, dict) else {}


def _env_bool(name: str) -> bool:
    return os.environ.get(name, "") in _TRUE_WORDS


def _resolve_version() -> str:
    if VERSION != "dev":
        return VERSION
    try:
        installed = metadata.version("flagrelay")
    except metadata.PackageNotFoundError:
        return VERSION
    return installed or VERSION


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flagd", description=_DESCRIPTION)
    parser.add_argument("-x", "--debug", action="store_true", help="verbose logging")
    parser.add_argument(
        "--config", default="", help="config file (default is $HOME/.agent.yaml)"
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("version", help="Print the version number of flagd")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; return the exit status."""
    sys.stdout.write(_BANNER)
    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = args.debug or _env_bool(f"{_ENV_PREFIX}DEBUG")
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO)
    load_settings(args.config or None)

    if args.command == "version":
        print(version_line(_resolve_version(), COMMIT, DATE))
        return 0
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())