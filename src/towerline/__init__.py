"""Task delegation and duplicate-suppression engine for two routing authorities."""

__version__ = "0.4.0"
