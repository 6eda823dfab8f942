"""Command-line interface for simrunner.

This module provides the `simrunner` CLI command for managing simulation jobs.

Usage:
    simrunner jobs list [--env ENV] [--runfile PATH]
    simrunner jobs show <job-id> [--logs]
    simrunner jobs create <name> --template ID [--set KEY=VALUE ...] [--input PATH ...]
    simrunner jobs submit <job-id>
    simrunner jobs sync
    simrunner jobs logs <job-id>
    simrunner jobs download <job-id> [NAME] [--output PATH]
    simrunner jobs delete <job-id> [--keep-remote] [--force]
    simrunner env list [--runfile PATH]
    simrunner templates list
"""

from .app import app, main

__all__ = ["app", "main"]
