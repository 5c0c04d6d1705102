"""toolexport - export job lifecycle service for tools, forms and themes."""

__version__ = "1.0.0"
