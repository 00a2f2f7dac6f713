"""Core configuration, vocabulary, errors and collaborator contracts."""
