"""Command line tool for comparing an application to its live state."""
