"""Device trees in memory, written as source or YAML, and flattened blob writing."""

__version__ = "0.1.0"
__all__ = ["fdt_sw", "livetree", "srcpos", "treesource", "util", "yamltree"]