"""scPBDE: pseudobulk differential expression across cluster pairs."""

__version__ = "0.1.0"
