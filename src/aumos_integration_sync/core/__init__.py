"""Domain models, persistence protocols and the integration lifecycle service."""
