"""Tool contract, built-in tools and the registry."""
