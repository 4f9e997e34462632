"""Core services: environment, credentials, transport and metadata caching."""
