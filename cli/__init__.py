"""Command-line interface for Protocoale."""
