"""Pytest configuration and fixtures."""

# std imports
import os

# prompt_toolkit applications of tests should never await cursor position
# reports of the raw socket clients used by tests.
os.environ.setdefault("PROMPT_TOOLKIT_NO_CPR", "1")
