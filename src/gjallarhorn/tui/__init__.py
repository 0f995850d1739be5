"""Textual dashboard."""

from gjallarhorn.tui.app import GjallarhornApp, run_tui

__all__ = ["GjallarhornApp", "run_tui"]
