"""ChatOnEverything host server."""
