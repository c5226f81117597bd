"""Command-line entry point for ralphloop."""
