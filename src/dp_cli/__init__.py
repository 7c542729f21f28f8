"""Command-line interface for diagram-preview."""
