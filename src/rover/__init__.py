"""Rover: run AI coding agents on isolated git worktrees."""

__version__ = "0.4.0"
