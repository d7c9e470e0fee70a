"""LexVault Engine — configuration, error hierarchy, structured logging."""
