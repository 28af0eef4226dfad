"""Turn context and the tool-use scheduler."""
