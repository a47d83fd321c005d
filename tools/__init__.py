"""Command line tools for DocSkills."""
