"""Cross-authority bridge services."""
