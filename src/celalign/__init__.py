"""celalign: align tumor and cell-line expression profiles into one space."""

__version__ = "0.3.0"
