"""Worker consuming the inbox Redis Streams."""
