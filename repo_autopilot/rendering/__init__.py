"""Sandboxed Jinja2 prompt rendering."""
