"""Generate single-page apps with an LLM and publish them to GitHub Pages."""

__version__ = "1.0.0"
