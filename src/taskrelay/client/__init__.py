"""Client consumer of the push channel."""
