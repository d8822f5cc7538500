"""
contree - print project files as context for LLMs and other tools.

This package walks a project directory, honours ``.gitignore`` and
``.contreeignore`` rules at every level, optionally filters files with a
grep-like pattern, and writes each file as a fenced block. For Cargo
projects it can also surface registry sources related to compiler errors
found in captured command output.
"""

__version__ = "0.2.0"
__author__ = "contree contributors"
