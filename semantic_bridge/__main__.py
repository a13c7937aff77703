#!/usr/bin/env python3
"""Semantic Bridge entry point: python -m semantic_bridge."""

from .cli import main


if __name__ == "__main__":
    main()
