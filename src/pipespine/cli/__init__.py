"""Command-line interface (``pipespine``)."""
