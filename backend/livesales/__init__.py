"""Live Sales authentication service."""
