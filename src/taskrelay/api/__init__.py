"""HTTP control surface and push channel."""
