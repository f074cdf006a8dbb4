"""
Storyrunner - Unattended execution of coding agents against a story backlog.

This package drives AI coding-agent CLIs through a backlog of user stories,
with a file-backed command queue for human intervention, dependency-aware
scheduling, and rate-limit fallback with model escalation.
"""

__version__ = "0.1.0"
