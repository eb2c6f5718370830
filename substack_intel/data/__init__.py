"""Storage schema, pipeline store and mailbox connector."""
