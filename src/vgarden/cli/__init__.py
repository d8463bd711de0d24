"""Command line interface for vgarden."""
