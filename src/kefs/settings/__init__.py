"""Plugin and repository settings: models, validation, defaults and persistence."""
