"""Shared CLI helpers."""

from __future__ import annotations

import argparse


def base_parser(name: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=name, description=description)
    parser.add_argument("--config", default=None, help="Config file path")
    return parser
