"""Command-line interface for printerlink."""
