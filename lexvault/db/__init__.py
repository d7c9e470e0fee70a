"""LexVault Database — declarative base, engine registry, repository tables, sessions."""
