"""Shell command parsing, classification and path extraction."""
