"""kiln.commands - CLI command handlers."""
