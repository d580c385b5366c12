"""Infrastructure layer: configuration, persistence and collaborator adapters."""
